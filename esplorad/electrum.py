"""Electrum protocol types shared by the RPC server and peer discovery."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from esplorad.errors import ElectrsError

Hostname = str
Port = int

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def get_electrum_height(height: int | None, has_unconfirmed_parents: bool) -> int:
    """Height as Electrum reports it: 0 for mempool, -1 with unconfirmed parents."""
    if height is not None:
        return height
    return -1 if has_unconfirmed_parents else 0


def _check_port(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise ElectrsError(f"invalid {name}: {value!r}")
    return value


def _optional_port(value: Any, name: str) -> int | None:
    return None if value is None else _check_port(value, name)


def _parse_component(text: str, name: str) -> int:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not (digits.isascii() and digits.isdigit()):
        raise ElectrsError(f"invalid {name}")
    return int(digits)


def _parse_genesis(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ElectrsError("invalid genesis_hash")
        return bytes(value).hex()
    if not isinstance(value, str) or len(value) != 64 or not set(value) <= _HEX_DIGITS:
        raise ElectrsError(f"invalid genesis_hash: {value!r}")
    return value.lower()


def _require(data: Mapping, key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ElectrsError(f"missing field {key}") from None


def _require_str(data: Mapping, key: str) -> str:
    value = _require(data, key)
    if not isinstance(value, str):
        raise ElectrsError(f"invalid {key}: {value!r}")
    return value


def _parse_version(value: Any, name: str) -> ProtocolVersion:
    if not isinstance(value, str):
        raise ElectrsError(f"invalid {name}")
    try:
        return ProtocolVersion.parse(value)
    except ElectrsError as exc:
        raise ElectrsError(f"invalid {name}") from exc


def _parse_pruning(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ElectrsError(f"invalid pruning: {value!r}")
    return value


@dataclass(frozen=True, order=True)
class ProtocolVersion:
    """An Electrum protocol version, ordered by major then minor."""

    major: int = 0
    minor: int = 0

    @classmethod
    def parse(cls, text: str) -> ProtocolVersion:
        parts = text.split(".")
        major = _parse_component(parts[0], "major")
        if len(parts) < 2:
            raise ElectrsError("missing minor")
        minor = _parse_component(parts[1], "minor")
        return cls(major, minor)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


@dataclass(frozen=True)
class ServerPorts:
    """The ports on which a server host offers TCP and SSL service."""

    tcp_port: int | None = None
    ssl_port: int | None = None

    @classmethod
    def from_json(cls, data: Any) -> ServerPorts:
        if not isinstance(data, Mapping):
            raise ElectrsError(f"invalid server ports: {data!r}")
        return cls(
            _optional_port(data.get("tcp_port"), "tcp_port"),
            _optional_port(data.get("ssl_port"), "ssl_port"),
        )

    def to_json(self) -> dict[str, int | None]:
        return {"tcp_port": self.tcp_port, "ssl_port": self.ssl_port}


def parse_server_hosts(data: Any) -> dict[Hostname, ServerPorts]:
    """Parse a JSON object mapping host names to their ports."""
    if not isinstance(data, Mapping):
        raise ElectrsError(f"invalid hosts: {data!r}")
    return {str(host): ServerPorts.from_json(ports) for host, ports in data.items()}


@dataclass
class ServerFeatures:
    """What a server reports about itself via `server.features`."""

    hosts: dict[Hostname, ServerPorts]
    genesis_hash: str
    server_version: str
    protocol_min: ProtocolVersion
    protocol_max: ProtocolVersion
    pruning: int | None
    hash_function: str

    @classmethod
    def from_json(cls, data: Any) -> ServerFeatures:
        if not isinstance(data, Mapping):
            raise ElectrsError(f"invalid features: {data!r}")
        return cls(
            hosts=parse_server_hosts(_require(data, "hosts")),
            genesis_hash=_parse_genesis(_require(data, "genesis_hash")),
            server_version=_require_str(data, "server_version"),
            protocol_min=_parse_version(_require(data, "protocol_min"), "protocol_min"),
            protocol_max=_parse_version(_require(data, "protocol_max"), "protocol_max"),
            pruning=_parse_pruning(data.get("pruning")),
            hash_function=_require_str(data, "hash_function"),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "hosts": {host: ports.to_json() for host, ports in self.hosts.items()},
            "genesis_hash": self.genesis_hash,
            "server_version": self.server_version,
            "protocol_min": str(self.protocol_min),
            "protocol_max": str(self.protocol_max),
            "pruning": self.pruning,
            "hash_function": self.hash_function,
        }

    @classmethod
    def from_client_features(cls, features: Mapping) -> ServerFeatures:
        """Build from a client's `server.features` reply, which carries no hosts."""
        hash_function = features.get("hash_function")
        protocol_min = _parse_version(features.get("protocol_min"), "protocol_min")
        protocol_max = _parse_version(features.get("protocol_max"), "protocol_max")
        if hash_function is None:
            raise ElectrsError("missing hash_function")
        server_version = features.get("server_version")
        if not isinstance(server_version, str):
            raise ElectrsError("invalid server_version")
        return cls(
            hosts={},
            genesis_hash=_parse_genesis(features.get("genesis_hash")),
            server_version=server_version,
            protocol_min=protocol_min,
            protocol_max=protocol_max,
            pruning=_parse_pruning(features.get("pruning")),
            hash_function=str(hash_function),
        )


@dataclass(frozen=True)
class Service:
    """One service a server exposes: a transport and a port."""

    protocol: str
    port: int = field(default=0)

    def __post_init__(self) -> None:
        if self.protocol not in ("tcp", "ssl"):
            raise ElectrsError(f"unknown service protocol: {self.protocol!r}")
        _check_port(self.port, "port")

    @classmethod
    def tcp(cls, port: int) -> Service:
        return cls("tcp", port)

    @classmethod
    def ssl(cls, port: int) -> Service:
        return cls("ssl", port)

    def __str__(self) -> str:
        return f"{self.protocol[0]}{self.port}"