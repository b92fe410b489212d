import pytest

from esplorad.chain import (
    DEFAULT_BLOCKHASH,
    Block,
    BlockHeader,
    Network,
    genesis_hash,
    sha256d,
)

GENESIS_MERKLE = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"


def mainnet_genesis_header():
    return BlockHeader(1, DEFAULT_BLOCKHASH, GENESIS_MERKLE, 1231006505, 0x1D00FFFF, 2083236893)


def legacy_tx():
    return (
        bytes.fromhex("01000000")
        + b"\x01"
        + b"\x11" * 32
        + bytes(4)
        + b"\x01\x51"
        + b"\xff" * 4
        + b"\x01"
        + (5000).to_bytes(8, "little")
        + b"\x01\x51"
        + bytes(4)
    )


def segwit_tx():
    return (
        bytes.fromhex("02000000")
        + b"\x00\x01"
        + b"\x01"
        + b"\x22" * 32
        + (1).to_bytes(4, "little")
        + b"\x00"
        + b"\xfe\xff\xff\xff"
        + b"\x01"
        + (700).to_bytes(8, "little")
        + b"\x02\x00\x14"
        + b"\x01\x02\xab\xcd"
        + bytes(4)
    )


def test_names_match_source_order():
    assert Network.names() == ["mainnet", "testnet", "regtest", "signet"]


@pytest.mark.parametrize("name", ["mainnet", "testnet", "regtest", "signet"])
def test_from_name_round_trip(name):
    assert Network.from_name(name).value == name


def test_from_name_rejects_unknown():
    with pytest.raises(ValueError, match="unsupported Bitcoin network"):
        Network.from_name("liquid")


@pytest.mark.parametrize(
    "name, expected",
    [("mainnet", False), ("testnet", False), ("regtest", True), ("signet", False)],
)
def test_is_regtest_only_for_regtest(name, expected):
    assert Network.from_name(name).is_regtest() is expected


def test_mainnet_magic():
    assert Network.BITCOIN.magic() == 0xD9B4BEF9


def test_regtest_magic():
    assert Network.REGTEST.magic() == 0xDAB5_BFFA


def test_magics_are_distinct():
    magics = {
        Network.from_name("mainnet").magic(),
        Network.from_name("testnet").magic(),
        Network.from_name("regtest").magic(),
        Network.from_name("signet").magic(),
    }
    assert len(magics) == 4


def test_sha256d_of_empty():
    assert sha256d(b"").hex() == "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"


def test_genesis_header_hash_matches_mainnet_genesis():
    assert mainnet_genesis_header().block_hash() == genesis_hash(Network.BITCOIN)


def test_regtest_genesis_header_hash():
    header = BlockHeader(1, DEFAULT_BLOCKHASH, GENESIS_MERKLE, 1296688602, 0x207FFFFF, 2)
    assert header.block_hash() == genesis_hash(Network.REGTEST)


def test_genesis_hashes_differ_per_network():
    hashes = [genesis_hash(n) for n in Network]
    assert len(set(hashes)) == len(hashes)
    assert all(len(h) == 64 for h in hashes)


def test_header_round_trip():
    header = mainnet_genesis_header()
    raw = header.serialize()
    assert len(raw) == 80
    assert BlockHeader.from_bytes(raw) == header


def test_header_wrong_length():
    with pytest.raises(ValueError):
        BlockHeader.from_bytes(bytes(79))


def test_block_parses_transactions():
    header = mainnet_genesis_header()
    tx1, tx2 = legacy_tx(), segwit_tx()
    block = Block.from_bytes(header.serialize() + b"\x02" + tx1 + tx2)
    assert block.transactions == [tx1, tx2]
    assert block.header == header
    assert block.block_hash() == genesis_hash(Network.BITCOIN)


def test_block_truncated_raises():
    raw = mainnet_genesis_header().serialize() + b"\x01" + legacy_tx()[:-2]
    with pytest.raises(ValueError):
        Block.from_bytes(raw)


def test_block_trailing_data_raises():
    raw = mainnet_genesis_header().serialize() + b"\x01" + legacy_tx() + b"\x00"
    with pytest.raises(ValueError, match="not consumed"):
        Block.from_bytes(raw)


def test_block_empty_witness_rejected():
    tx = segwit_tx()
    broken = tx[:-8] + b"\x00" + bytes(4)
    raw = mainnet_genesis_header().serialize() + b"\x01" + broken
    with pytest.raises(ValueError, match="superfluous witness"):
        Block.from_bytes(raw)