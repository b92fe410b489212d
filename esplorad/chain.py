"""Bitcoin networks, genesis hashes and the block wire format."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_BLOCKHASH = "0" * 64

_HEADER_SIZE = 80
_HEADER_STRUCT = struct.Struct("<i32s32sIII")


class Network(Enum):
    """The Bitcoin networks the server can index."""

    BITCOIN = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"
    SIGNET = "signet"

    def magic(self) -> int:
        """The network magic, as a little-endian 32-bit integer."""
        return int.from_bytes(_MAGIC_BYTES[self], "little")

    def is_regtest(self) -> bool:
        return self is Network.REGTEST

    @classmethod
    def names(cls) -> list[str]:
        """The names accepted on the command line, in order."""
        return [network.value for network in cls]

    @classmethod
    def from_name(cls, name: str) -> Network:
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"unsupported Bitcoin network: {name!r}") from None


_MAGIC_BYTES = {
    Network.BITCOIN: bytes.fromhex("f9beb4d9"),
    Network.TESTNET: bytes.fromhex("0b110907"),
    Network.REGTEST: bytes.fromhex("fabfb5da"),
    Network.SIGNET: bytes.fromhex("0a03cf40"),
}

_GENESIS_HASHES = {
    Network.BITCOIN: "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f",
    Network.TESTNET: "000000000933ea01ad0ee984209779baaec3ced90fa3f408719526f8d77f4943",
    Network.REGTEST: "0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206",
    Network.SIGNET: "00000008819873e925422c1ff0f99f7cc9bbb232af63a077a480a3633bee1ef6",
}


def genesis_hash(network: Network) -> str:
    """The hash of the network's genesis block, in display (hex) order."""
    return _GENESIS_HASHES[network]


def sha256d(data: bytes) -> bytes:
    """Double SHA-256 of the data."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _hash_to_bytes(value: str) -> bytes:
    raw = bytes.fromhex(value)
    if len(raw) != 32:
        raise ValueError(f"invalid hash length: {value!r}")
    return raw[::-1]


class _Reader:
    """Sequential reader over a byte string that fails on truncation."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    def read(self, size: int) -> bytes:
        end = self.pos + size
        if end > len(self.data):
            raise ValueError("unexpected end of data")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def varint(self) -> int:
        prefix = self.read(1)[0]
        if prefix == 0xFD:
            return struct.unpack("<H", self.read(2))[0]
        if prefix == 0xFE:
            return struct.unpack("<I", self.read(4))[0]
        if prefix == 0xFF:
            return struct.unpack("<Q", self.read(8))[0]
        return prefix

    def var_bytes(self) -> bytes:
        return self.read(self.varint())

    @property
    def exhausted(self) -> bool:
        return self.pos == len(self.data)


def _read_transaction(reader: _Reader) -> bytes:
    """Read one serialized transaction and return its raw bytes."""
    start = reader.pos
    reader.read(4)
    input_count = reader.varint()
    segwit = False
    if input_count == 0:
        flag = reader.read(1)[0]
        if flag != 1:
            raise ValueError(f"unsupported segwit flag {flag}")
        segwit = True
        input_count = reader.varint()
    for _ in range(input_count):
        reader.read(36)
        reader.var_bytes()
        reader.read(4)
    for _ in range(reader.varint()):
        reader.read(8)
        reader.var_bytes()
    if segwit:
        witness_items = 0
        for _ in range(input_count):
            items = reader.varint()
            witness_items += items
            for _ in range(items):
                reader.var_bytes()
        if witness_items == 0:
            raise ValueError("superfluous witness record")
    reader.read(4)
    return reader.data[start:reader.pos]


@dataclass(frozen=True)
class BlockHeader:
    """An 80-byte block header; hashes are kept in display (hex) order."""

    version: int
    prev_blockhash: str
    merkle_root: str
    time: int
    bits: int
    nonce: int

    @classmethod
    def from_bytes(cls, data: bytes) -> BlockHeader:
        if len(data) != _HEADER_SIZE:
            raise ValueError(f"block header must be {_HEADER_SIZE} bytes, got {len(data)}")
        version, prev, merkle, time, bits, nonce = _HEADER_STRUCT.unpack(data)
        return cls(version, prev[::-1].hex(), merkle[::-1].hex(), time, bits, nonce)

    def serialize(self) -> bytes:
        return _HEADER_STRUCT.pack(
            self.version,
            _hash_to_bytes(self.prev_blockhash),
            _hash_to_bytes(self.merkle_root),
            self.time,
            self.bits,
            self.nonce,
        )

    def block_hash(self) -> str:
        return sha256d(self.serialize())[::-1].hex()


@dataclass(frozen=True)
class Block:
    """A block: its header and the raw bytes of each transaction."""

    header: BlockHeader
    transactions: list[bytes] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> Block:
        reader = _Reader(data)
        header = BlockHeader.from_bytes(reader.read(_HEADER_SIZE))
        count = reader.varint()
        transactions = [_read_transaction(reader) for _ in range(count)]
        if not reader.exhausted:
            raise ValueError("data not consumed entirely when parsing block")
        return cls(header, transactions)

    def block_hash(self) -> str:
        return self.header.block_hash()