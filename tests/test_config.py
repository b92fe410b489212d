from pathlib import Path

import pytest

from esplorad.chain import Network
from esplorad.config import (
    Config,
    CookieFile,
    RpcLogging,
    StaticCookie,
    get_network_subdir,
    str_to_socketaddr,
)
from esplorad.electrum import ServerPorts
from esplorad.errors import ConnectionFailure, ElectrsError


def _config(tmp_path, *extra):
    return Config.from_args(["--daemon-dir", str(tmp_path), *extra])


def test_rpc_logging_options():
    assert RpcLogging.options() == ["full", "no-params"]


@pytest.mark.parametrize("name", ["full", "no-params"])
def test_rpc_logging_round_trip(name):
    assert RpcLogging.from_name(name).value == name


def test_rpc_logging_unknown():
    with pytest.raises(ValueError):
        RpcLogging.from_name("verbose")


@pytest.mark.parametrize(
    "network,subdir",
    [
        (Network.BITCOIN, None),
        (Network.TESTNET, "testnet3"),
        (Network.REGTEST, "regtest"),
        (Network.SIGNET, "signet"),
    ],
)
def test_network_subdir(network, subdir):
    assert get_network_subdir(network) == subdir


def test_socketaddr_ipv4():
    assert str_to_socketaddr("127.0.0.1:8332", "Bitcoin RPC") == ("127.0.0.1", 8332)


def test_socketaddr_ipv6():
    assert str_to_socketaddr("[::1]:50001", "Electrum RPC") == ("::1", 50001)


@pytest.mark.parametrize("address", ["127.0.0.1", "127.0.0.1:notaport", "127.0.0.1:70000"])
def test_socketaddr_invalid(address):
    with pytest.raises(ElectrsError, match="unable to resolve HTTP Server address"):
        str_to_socketaddr(address, "HTTP Server")


def test_mainnet_defaults(tmp_path):
    config = _config(tmp_path)
    assert config.network_type is Network.BITCOIN
    assert config.db_path == Path("./db") / "mainnet"
    assert config.daemon_dir == tmp_path
    assert config.blocks_dir == tmp_path / "blocks"
    assert config.daemon_rpc_addr == ("127.0.0.1", 8332)
    assert config.electrum_rpc_addr == ("127.0.0.1", 50001)
    assert config.http_addr == ("127.0.0.1", 3000)
    assert config.monitoring_addr == ("127.0.0.1", 4224)
    assert config.utxos_limit == 500
    assert config.electrum_txs_limit == 500
    assert config.cookie is None
    assert config.electrum_rpc_logging is None
    assert config.jsonrpc_import is False
    assert config.electrum_public_hosts is None
    assert config.tor_proxy is None


def test_testnet_defaults(tmp_path):
    config = _config(tmp_path, "--network", "testnet", "--db-dir", str(tmp_path / "db"))
    assert config.db_path == tmp_path / "db" / "testnet"
    assert config.daemon_dir == tmp_path / "testnet3"
    assert config.blocks_dir == tmp_path / "testnet3" / "blocks"
    assert config.daemon_rpc_addr[1] == 18332
    assert config.electrum_rpc_addr[1] == 60001
    assert config.http_addr[1] == 3001
    assert config.monitoring_addr[1] == 14224


def test_regtest_and_signet_ports(tmp_path):
    regtest = _config(tmp_path, "--network", "regtest")
    assert (regtest.daemon_rpc_addr[1], regtest.electrum_rpc_addr[1]) == (18443, 60401)
    assert (regtest.http_addr[1], regtest.monitoring_addr[1]) == (3002, 24224)
    signet = _config(tmp_path, "--network", "signet")
    assert (signet.daemon_rpc_addr[1], signet.electrum_rpc_addr[1]) == (38332, 60601)
    assert (signet.http_addr[1], signet.monitoring_addr[1]) == (3003, 54224)


def test_default_daemon_dir_uses_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    config = Config.from_args(["--network", "regtest"])
    assert config.daemon_dir == tmp_path / ".bitcoin" / "regtest"


def test_explicit_values(tmp_path):
    config = _config(
        tmp_path,
        "--blocks-dir", str(tmp_path / "blk"),
        "--http-addr", "127.0.0.1:8080",
        "--utxos-limit", "10",
        "--electrum-txs-limit", "20",
        "--electrum-banner", "hello",
        "--electrum-rpc-logging", "no-params",
        "--cors", "*",
        "--precache-scripts", "scripts.txt",
        "--jsonrpc-import", "--lightmode", "--address-search", "--index-unspendables",
        "--electrum-announce",
        "-vv", "--timestamp",
    )
    assert config.blocks_dir == tmp_path / "blk"
    assert config.http_addr == ("127.0.0.1", 8080)
    assert (config.utxos_limit, config.electrum_txs_limit) == (10, 20)
    assert config.electrum_banner == "hello"
    assert config.electrum_rpc_logging is RpcLogging.NO_PARAMS
    assert config.cors == "*"
    assert config.precache_scripts == "scripts.txt"
    assert config.jsonrpc_import and config.light_mode
    assert config.address_search and config.index_unspendables
    assert config.electrum_announce
    assert config.verbosity == 2
    assert config.timestamp is True


def test_default_banner(tmp_path):
    config = _config(tmp_path)
    assert config.electrum_banner.startswith("Welcome to electrs-esplora ")


def test_unknown_network(tmp_path):
    with pytest.raises(ValueError, match="unsupported Bitcoin network"):
        _config(tmp_path, "--network", "moonnet")


def test_unknown_rpc_logging(tmp_path):
    with pytest.raises(ValueError, match="unsupported RPC logging option"):
        _config(tmp_path, "--electrum-rpc-logging", "everything")


def test_invalid_limit_exits(tmp_path):
    with pytest.raises(SystemExit):
        _config(tmp_path, "--utxos-limit", "-1")


def test_public_hosts_and_tor_proxy(tmp_path):
    config = _config(
        tmp_path,
        "--electrum-public-hosts", '{"test.foobar.example": {"tcp_port": 60002}}',
        "--tor-proxy", "127.0.0.1:9050",
    )
    assert config.electrum_public_hosts == {"test.foobar.example": ServerPorts(60002, None)}
    assert config.tor_proxy == ("127.0.0.1", 9050)


def test_invalid_public_hosts(tmp_path):
    with pytest.raises(ElectrsError, match="invalid --electrum-public-hosts"):
        _config(tmp_path, "--electrum-public-hosts", "not json")


def test_static_cookie_getter(tmp_path):
    config = _config(tmp_path, "--cookie", "user:password")
    getter = config.cookie_getter()
    assert getter == StaticCookie(b"user:password")
    assert getter.get() == b"user:password"


def test_cookie_file_getter(tmp_path):
    (tmp_path / ".cookie").write_bytes(b"__cookie__:secret")
    config = _config(tmp_path)
    getter = config.cookie_getter()
    assert getter == CookieFile(tmp_path)
    assert getter.get() == b"__cookie__:secret"


def test_missing_cookie_file(tmp_path):
    with pytest.raises(ConnectionFailure, match="failed to read cookie"):
        CookieFile(tmp_path / "missing").get()