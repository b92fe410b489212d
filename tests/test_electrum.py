import pytest

from esplorad.chain import Network, genesis_hash
from esplorad.electrum import (
    ProtocolVersion,
    ServerFeatures,
    ServerPorts,
    Service,
    get_electrum_height,
    parse_server_hosts,
)
from esplorad.errors import ElectrsError

PROTOCOL_VERSION = ProtocolVersion(1, 4)


def features_json():
    return {
        "hosts": {"test.foobar.example": {"tcp_port": 60002}},
        "genesis_hash": genesis_hash(Network.TESTNET),
        "server_version": "electrs-esplora 9",
        "protocol_min": "1.4",
        "protocol_max": "1.4",
        "pruning": None,
        "hash_function": "sha256",
    }


@pytest.mark.parametrize(
    "height,parents,expected",
    [(7, False, 7), (7, True, 7), (None, False, 0), (None, True, -1)],
)
def test_electrum_height(height, parents, expected):
    assert get_electrum_height(height, parents) == expected


def test_protocol_version_parse_and_display():
    version = ProtocolVersion.parse("1.4")
    assert version == PROTOCOL_VERSION
    assert str(version) == "1.4"


def test_protocol_version_ordering():
    assert ProtocolVersion(1, 4) < ProtocolVersion(1, 10)
    assert ProtocolVersion(2, 0) > ProtocolVersion(1, 99)
    assert max(ProtocolVersion(1, 2), ProtocolVersion(1, 4)) == PROTOCOL_VERSION


@pytest.mark.parametrize(
    "text,message",
    [("1", "missing minor"), ("a.4", "invalid major"), ("1.x", "invalid minor"), ("", "invalid major")],
)
def test_protocol_version_errors(text, message):
    with pytest.raises(ElectrsError, match=message):
        ProtocolVersion.parse(text)


def test_hosts_from_source_example():
    hosts = parse_server_hosts({"test.foobar.example": {"tcp_port": 60002}})
    assert hosts == {"test.foobar.example": ServerPorts(tcp_port=60002, ssl_port=None)}


def test_server_ports_invalid():
    with pytest.raises(ElectrsError):
        ServerPorts.from_json({"tcp_port": 70000})


def test_features_round_trip():
    features = ServerFeatures.from_json(features_json())
    assert features.protocol_min == PROTOCOL_VERSION
    assert features.hash_function == "sha256"
    assert ServerFeatures.from_json(features.to_json()) == features
    assert features.to_json()["hosts"]["test.foobar.example"]["ssl_port"] is None


def test_features_missing_field():
    data = features_json()
    del data["server_version"]
    with pytest.raises(ElectrsError, match="server_version"):
        ServerFeatures.from_json(data)


def test_features_bad_genesis():
    data = features_json()
    data["genesis_hash"] = "zz"
    with pytest.raises(ElectrsError, match="genesis_hash"):
        ServerFeatures.from_json(data)


def test_from_client_features_has_no_hosts():
    data = features_json()
    del data["hosts"]
    features = ServerFeatures.from_client_features(data)
    assert features.hosts == {}
    assert features.genesis_hash == genesis_hash(Network.TESTNET)
    assert features.protocol_max == PROTOCOL_VERSION


def test_from_client_features_missing_hash_function():
    data = features_json()
    data["hash_function"] = None
    with pytest.raises(ElectrsError, match="missing hash_function"):
        ServerFeatures.from_client_features(data)


def test_from_client_features_invalid_protocol_min():
    data = features_json()
    data["protocol_min"] = "one"
    with pytest.raises(ElectrsError, match="invalid protocol_min"):
        ServerFeatures.from_client_features(data)


def test_service_display():
    assert str(Service.tcp(50001)) == "t50001"
    assert str(Service.ssl(50002)) == "s50002"


def test_service_hash_dedupes():
    services = {Service.tcp(60001), Service.tcp(60001), Service.ssl(60001)}
    assert len(services) == 2


def test_service_invalid_port():
    with pytest.raises(ElectrsError):
        Service.tcp(-1)