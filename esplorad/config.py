"""Command-line configuration for the server."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import socket
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from esplorad.chain import Network
from esplorad.electrum import ServerPorts, parse_server_hosts
from esplorad.errors import ConnectionFailure, ElectrsError

ELECTRS_VERSION = "0.1.0"

SocketAddr = tuple[str, int]

_LOG_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG, logging.DEBUG]
_log_handler: logging.Handler | None = None


class RpcLogging(Enum):
    """How much of each Electrum RPC call is logged."""

    FULL = "full"
    NO_PARAMS = "no-params"

    @classmethod
    def options(cls) -> list[str]:
        return [option.value for option in cls]

    @classmethod
    def from_name(cls, option: str) -> RpcLogging:
        try:
            return cls(option)
        except ValueError:
            raise ValueError(f"unsupported RPC logging option: {option!r}") from None


_NETWORK_SUBDIRS = {
    Network.BITCOIN: None,
    Network.TESTNET: "testnet3",
    Network.REGTEST: "regtest",
    Network.SIGNET: "signet",
}

_DEFAULT_DAEMON_PORTS = {
    Network.BITCOIN: 8332,
    Network.TESTNET: 18332,
    Network.REGTEST: 18443,
    Network.SIGNET: 38332,
}

_DEFAULT_ELECTRUM_PORTS = {
    Network.BITCOIN: 50001,
    Network.TESTNET: 60001,
    Network.REGTEST: 60401,
    Network.SIGNET: 60601,
}

_DEFAULT_HTTP_PORTS = {
    Network.BITCOIN: 3000,
    Network.TESTNET: 3001,
    Network.REGTEST: 3002,
    Network.SIGNET: 3003,
}

_DEFAULT_MONITORING_PORTS = {
    Network.BITCOIN: 4224,
    Network.TESTNET: 14224,
    Network.REGTEST: 24224,
    Network.SIGNET: 54224,
}


def get_network_subdir(network: Network) -> str | None:
    """The sub-directory of the daemon's data directory used for the network."""
    return _NETWORK_SUBDIRS[network]


def _split_host_port(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid address: {address!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise ValueError(f"invalid address: {address!r}")
    port = int(port_text)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"invalid port: {port_text!r}")
    return host, port


def str_to_socketaddr(address: str, what: str) -> SocketAddr:
    """Resolve 'host:port' and return the last address found as (ip, port)."""
    try:
        host, port = _split_host_port(address)
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (ValueError, OSError, UnicodeError) as exc:
        raise ElectrsError(f"unable to resolve {what} address") from exc
    if not infos:
        raise ElectrsError(f"unable to resolve {what} address")
    sockaddr = infos[-1][4]
    return str(sockaddr[0]), int(sockaddr[1])


def _parse_socketaddr(address: str) -> SocketAddr:
    host, port = _split_host_port(address)
    return str(ipaddress.ip_address(host)), port


class CookieGetter(Protocol):
    def get(self) -> bytes: ...


@dataclass(frozen=True)
class StaticCookie:
    """A cookie given directly on the command line."""

    value: bytes

    def get(self) -> bytes:
        return self.value


@dataclass(frozen=True)
class CookieFile:
    """A cookie read from the daemon's `.cookie` file on every request."""

    daemon_dir: Path

    def get(self) -> bytes:
        path = Path(self.daemon_dir) / ".cookie"
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ConnectionFailure(f"failed to read cookie from {str(path)!r}") from exc


def _usize(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid value: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid value: {text!r}")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="electrs", description="Electrum Rust Server")
    parser.add_argument("--version", action="version", version=ELECTRS_VERSION)
    parser.add_argument("-v", dest="verbosity", action="count", default=0,
                        help="Increase logging verbosity")
    parser.add_argument("--timestamp", action="store_true",
                        help="Prepend log lines with a timestamp")
    parser.add_argument("--db-dir", dest="db_dir",
                        help="Directory to store index database (default: ./db/)")
    parser.add_argument("--daemon-dir", dest="daemon_dir",
                        help="Data directory of Bitcoind (default: ~/.bitcoin/)")
    parser.add_argument("--blocks-dir", dest="blocks_dir",
                        help="Directory containing the raw blocks files (blk*.dat) "
                             "(default: ~/.bitcoin/blocks/)")
    parser.add_argument("--cookie",
                        help="JSONRPC authentication cookie ('USER:PASSWORD', "
                             "default: read from ~/.bitcoin/.cookie)")
    parser.add_argument("--network",
                        help=f"Select network type ({', '.join(Network.names())})")
    parser.add_argument("--electrum-rpc-addr", dest="electrum_rpc_addr",
                        help="Electrum server JSONRPC 'addr:port' to listen on")
    parser.add_argument("--http-addr", dest="http_addr",
                        help="HTTP server 'addr:port' to listen on")
    parser.add_argument("--daemon-rpc-addr", dest="daemon_rpc_addr",
                        help="Bitcoin daemon JSONRPC 'addr:port' to connect")
    parser.add_argument("--monitoring-addr", dest="monitoring_addr",
                        help="Prometheus monitoring 'addr:port' to listen on")
    parser.add_argument("--jsonrpc-import", dest="jsonrpc_import", action="store_true",
                        help="Use JSONRPC instead of directly importing blk*.dat files")
    parser.add_argument("--lightmode", dest="light_mode", action="store_true",
                        help="Enable light mode for reduced storage")
    parser.add_argument("--address-search", dest="address_search", action="store_true",
                        help="Enable prefix address search")
    parser.add_argument("--index-unspendables", dest="index_unspendables",
                        action="store_true",
                        help="Enable indexing of provably unspendable outputs")
    parser.add_argument("--cors", help="Origins allowed to make cross-site requests")
    parser.add_argument("--precache-scripts", dest="precache_scripts",
                        help="Path to file with list of scripts to pre-cache")
    parser.add_argument("--utxos-limit", dest="utxos_limit", type=_usize, default=500,
                        help="Maximum number of utxos to process per address")
    parser.add_argument("--electrum-txs-limit", dest="electrum_txs_limit", type=_usize,
                        default=500,
                        help="Maximum number of transactions returned by Electrum "
                             "history queries")
    parser.add_argument("--electrum-banner", dest="electrum_banner",
                        help="Welcome banner for the Electrum server")
    parser.add_argument("--electrum-rpc-logging", dest="electrum_rpc_logging",
                        help=f"Select RPC logging option ({', '.join(RpcLogging.options())})")
    if os.name == "posix":
        parser.add_argument("--http-socket-file", dest="http_socket_file",
                            help="HTTP server 'unix socket file' to listen on "
                                 "(enabling this disables the http server)")
    parser.add_argument("--electrum-public-hosts", dest="electrum_public_hosts",
                        help="A dictionary of hosts where the Electrum server can be "
                             "reached at. Required to enable server discovery.")
    parser.add_argument("--electrum-announce", dest="electrum_announce",
                        action="store_true",
                        help="Announce the Electrum server to other servers")
    parser.add_argument("--tor-proxy", dest="tor_proxy",
                        help="ip:addr of socks proxy for accessing onion hosts")
    return parser


def _init_logging(verbosity: int, timestamp: bool) -> None:
    global _log_handler
    root = logging.getLogger()
    if _log_handler is not None:
        root.removeHandler(_log_handler)
    handler = logging.StreamHandler(sys.stderr)
    if timestamp:
        fmt = logging.Formatter("%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s",
                                "%Y-%m-%dT%H:%M:%S")
    else:
        fmt = logging.Formatter("%(levelname)s - %(message)s")
    handler.setFormatter(fmt)
    root.addHandler(handler)
    root.setLevel(_LOG_LEVELS[min(verbosity, len(_LOG_LEVELS) - 1)])
    _log_handler = handler


@dataclass
class Config:
    """Everything the server needs to know to run."""

    verbosity: int
    timestamp: bool
    network_type: Network
    db_path: Path
    daemon_dir: Path
    blocks_dir: Path
    daemon_rpc_addr: SocketAddr
    cookie: str | None
    electrum_rpc_addr: SocketAddr
    http_addr: SocketAddr
    http_socket_file: Path | None
    monitoring_addr: SocketAddr
    jsonrpc_import: bool
    light_mode: bool
    address_search: bool
    index_unspendables: bool
    cors: str | None
    precache_scripts: str | None
    utxos_limit: int
    electrum_txs_limit: int
    electrum_banner: str
    electrum_rpc_logging: RpcLogging | None
    electrum_public_hosts: dict[str, ServerPorts] | None = None
    electrum_announce: bool = False
    tor_proxy: SocketAddr | None = None

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse the command line, set up logging and return the configuration."""
        args = _build_parser().parse_args(argv)

        network_name = args.network or "mainnet"
        network_type = Network.from_name(network_name)
        db_path = Path(args.db_dir or "./db") / network_name

        def addr(value: str | None, defaults: dict[Network, int], what: str) -> SocketAddr:
            return str_to_socketaddr(value or f"127.0.0.1:{defaults[network_type]}", what)

        daemon_rpc_addr = addr(args.daemon_rpc_addr, _DEFAULT_DAEMON_PORTS, "Bitcoin RPC")
        electrum_rpc_addr = addr(args.electrum_rpc_addr, _DEFAULT_ELECTRUM_PORTS,
                                 "Electrum RPC")
        http_addr = addr(args.http_addr, _DEFAULT_HTTP_PORTS, "HTTP Server")
        socket_file = getattr(args, "http_socket_file", None)
        http_socket_file = Path(socket_file) if socket_file else None
        monitoring_addr = addr(args.monitoring_addr, _DEFAULT_MONITORING_PORTS,
                               "Prometheus monitoring")

        if args.daemon_dir:
            daemon_dir = Path(args.daemon_dir)
        else:
            try:
                daemon_dir = Path.home() / ".bitcoin"
            except RuntimeError as exc:
                raise ElectrsError("no homedir") from exc
        subdir = get_network_subdir(network_type)
        if subdir is not None:
            daemon_dir = daemon_dir / subdir
        blocks_dir = Path(args.blocks_dir) if args.blocks_dir else daemon_dir / "blocks"

        electrum_banner = (
            args.electrum_banner
            if args.electrum_banner is not None
            else f"Welcome to electrs-esplora {ELECTRS_VERSION}"
        )

        electrum_public_hosts = None
        if args.electrum_public_hosts is not None:
            try:
                electrum_public_hosts = parse_server_hosts(
                    json.loads(args.electrum_public_hosts)
                )
            except (ValueError, ElectrsError) as exc:
                raise ElectrsError("invalid --electrum-public-hosts") from exc

        rpc_logging = (
            RpcLogging.from_name(args.electrum_rpc_logging)
            if args.electrum_rpc_logging is not None
            else None
        )
        tor_proxy = _parse_socketaddr(args.tor_proxy) if args.tor_proxy else None

        _init_logging(args.verbosity, args.timestamp)

        config = cls(
            verbosity=args.verbosity,
            timestamp=args.timestamp,
            network_type=network_type,
            db_path=db_path,
            daemon_dir=daemon_dir,
            blocks_dir=blocks_dir,
            daemon_rpc_addr=daemon_rpc_addr,
            cookie=args.cookie,
            electrum_rpc_addr=electrum_rpc_addr,
            http_addr=http_addr,
            http_socket_file=http_socket_file,
            monitoring_addr=monitoring_addr,
            jsonrpc_import=args.jsonrpc_import,
            light_mode=args.light_mode,
            address_search=args.address_search,
            index_unspendables=args.index_unspendables,
            cors=args.cors,
            precache_scripts=args.precache_scripts,
            utxos_limit=args.utxos_limit,
            electrum_txs_limit=args.electrum_txs_limit,
            electrum_banner=electrum_banner,
            electrum_rpc_logging=rpc_logging,
            electrum_public_hosts=electrum_public_hosts,
            electrum_announce=args.electrum_announce,
            tor_proxy=tor_proxy,
        )
        print(repr(config), file=sys.stderr)
        return config

    def cookie_getter(self) -> CookieGetter:
        """A source for the daemon's authentication cookie."""
        if self.cookie is not None:
            return StaticCookie(self.cookie.encode())
        return CookieFile(self.daemon_dir)