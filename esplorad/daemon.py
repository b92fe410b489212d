"""JSON-RPC client for the Bitcoin daemon."""

from __future__ import annotations

import base64
import copy
import itertools
import json
import logging
import socket
import threading
import time
from collections.abc import Collection, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from esplorad.chain import DEFAULT_BLOCKHASH, Block, BlockHeader, Network
from esplorad.config import CookieGetter, SocketAddr
from esplorad.errors import ConnectionFailure, ElectrsError, Interrupted

log = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50_000
HEADERS_CHUNK_SIZE = 100_000
MIN_DAEMON_VERSION = 16_00_00
RETRY_DELAY = 3.0
SYNC_POLL_DELAY = 5.0
RPC_IN_WARMUP = -28

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _wait(stop_event: threading.Event | None, seconds: float) -> None:
    """Sleep for a while, raising Interrupted if asked to stop meanwhile."""
    if stop_event is None:
        time.sleep(seconds)
    elif stop_event.wait(seconds):
        raise Interrupted("interrupted while waiting")


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_hash(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 64 and set(value) <= _HEX_DIGITS


def _parse_hash(value: Any) -> str:
    if not isinstance(value, str):
        raise ElectrsError(f"non-string value: {_compact_json(value)}")
    if not _is_hash(value):
        raise ElectrsError(f"non-hex value: {_compact_json(value)}")
    return value.lower()


def _hex_bytes(value: Any, what: str) -> bytes:
    if not isinstance(value, str):
        raise ElectrsError(f"non-string {what}")
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise ElectrsError(f"non-hex {what}") from None


def _header_from_value(value: Any) -> BlockHeader:
    if not isinstance(value, str):
        raise ElectrsError(f"non-string header: {_compact_json(value)}")
    raw = _hex_bytes(value, "header")
    try:
        return BlockHeader.from_bytes(raw)
    except ValueError as exc:
        raise ElectrsError(f"failed to parse header {value}") from exc


def _block_from_value(value: Any) -> Block:
    raw = _hex_bytes(value, "block")
    try:
        return Block.from_bytes(raw)
    except ValueError as exc:
        raise ElectrsError(f"failed to parse block {value}") from exc


def _tx_from_value(value: Any) -> bytes:
    raw = _hex_bytes(value, "tx")
    if not raw:
        raise ElectrsError(f"failed to parse tx {value}")
    return raw


def parse_error_code(err: Any) -> int | None:
    """The integer `code` of a JSON-RPC error object, if there is one."""
    if not isinstance(err, Mapping):
        return None
    code = err.get("code")
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return None


def parse_jsonrpc_reply(reply: Any, method: str, expected_id: int) -> Any:
    """Extract the result of a JSON-RPC reply, raising on errors and id mismatch."""
    if not isinstance(reply, Mapping):
        raise ElectrsError(f"non-object reply: {reply!r}")
    err = reply.get("error")
    if err is not None:
        code = parse_error_code(err)
        if code == RPC_IN_WARMUP:
            raise ConnectionFailure(_compact_json(err))
        if code is not None:
            raise ElectrsError(f"{method} RPC error: {_compact_json(err)}")
    if "id" not in reply:
        raise ElectrsError(f"no id in reply: {dict(reply)!r}")
    reply_id = reply["id"]
    if not (
        isinstance(reply_id, int) and not isinstance(reply_id, bool) and reply_id == expected_id
    ):
        raise ElectrsError(
            f"wrong {method} response id {_compact_json(reply_id)}, expected {expected_id}"
        )
    if "result" not in reply:
        raise ElectrsError(f"no result in reply: {dict(reply)!r}")
    return reply["result"]


def _field(data: Mapping, key: str, check: Callable[[Any], bool], what: str) -> Any:
    if key not in data or not check(data[key]):
        raise ElectrsError(what)
    return data[key]


@dataclass(frozen=True)
class BlockchainInfo:
    """The parts of `getblockchaininfo` the indexer relies on."""

    chain: str
    blocks: int
    headers: int
    bestblockhash: str
    pruned: bool
    verificationprogress: float
    initialblockdownload: bool | None = None

    @classmethod
    def from_json(cls, data: Any) -> BlockchainInfo:
        what = "invalid blockchain info"
        if not isinstance(data, Mapping):
            raise ElectrsError(what)
        ibd = data.get("initialblockdownload")
        if ibd is not None and not isinstance(ibd, bool):
            raise ElectrsError(what)
        return cls(
            chain=_field(data, "chain", lambda v: isinstance(v, str), what),
            blocks=_field(data, "blocks", _is_count, what),
            headers=_field(data, "headers", _is_count, what),
            bestblockhash=_field(data, "bestblockhash", lambda v: isinstance(v, str), what),
            pruned=_field(data, "pruned", lambda v: isinstance(v, bool), what),
            verificationprogress=float(_field(data, "verificationprogress", _is_number, what)),
            initialblockdownload=ibd,
        )


@dataclass(frozen=True)
class NetworkInfo:
    """The parts of `getnetworkinfo` the indexer relies on."""

    version: int
    subversion: str
    relayfee: float  # in BTC/kB

    @classmethod
    def from_json(cls, data: Any) -> NetworkInfo:
        what = "invalid network info"
        if not isinstance(data, Mapping):
            raise ElectrsError(what)
        return cls(
            version=_field(data, "version", _is_count, what),
            subversion=_field(data, "subversion", lambda v: isinstance(v, str), what),
            relayfee=float(_field(data, "relayfee", _is_number, what)),
        )


def _tcp_connect(addr: SocketAddr, stop_event: threading.Event | None) -> socket.socket:
    while True:
        try:
            return socket.create_connection(addr)
        except OSError as exc:
            log.warning("failed to connect daemon at %s:%s: %s", addr[0], addr[1], exc)
            _wait(stop_event, RETRY_DELAY)


class Connection:
    """A single HTTP keep-alive connection to the daemon's RPC port."""

    def __init__(
        self,
        addr: SocketAddr,
        cookie_getter: CookieGetter,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.addr = addr
        self.cookie_getter = cookie_getter
        self.stop_event = stop_event
        self._sock = _tcp_connect(addr, stop_event)
        self._reader = self._sock.makefile("rb")

    def reconnect(self) -> Connection:
        return Connection(self.addr, self.cookie_getter, self.stop_event)

    def close(self) -> None:
        for resource in (self._reader, self._sock):
            try:
                resource.close()
            except OSError:
                pass

    def send(self, request: str) -> None:
        cookie = self.cookie_getter.get()
        body = request.encode()
        auth = base64.b64encode(cookie).decode("ascii")
        head = f"POST / HTTP/1.1\nAuthorization: Basic {auth}\nContent-Length: {len(body)}\n\n"
        try:
            self._sock.sendall(head.encode() + body)
        except OSError as exc:
            raise ConnectionFailure("disconnected from daemon while sending") from exc

    def _read_line(self) -> bytes | None:
        try:
            raw = self._reader.readline()
        except OSError as exc:
            raise ConnectionFailure("failed to read") from exc
        if not raw:
            return None
        if raw.endswith(b"\n"):
            raw = raw[:-1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
        return raw

    def recv(self) -> str:
        status_line = self._read_line()
        if status_line is None:
            raise ConnectionFailure("disconnected from daemon while receiving")
        status = status_line.decode("latin-1")

        headers: dict[str, str] = {}
        contents: bytes | None = None
        in_header = True
        while (line := self._read_line()) is not None:
            if not line:
                in_header = False
            elif in_header:
                name, sep, value = line.partition(b": ")
                if sep:
                    headers[name.decode("latin-1")] = value.decode("latin-1")
                else:
                    log.warning("invalid header: %r", line)
            else:
                contents = line
                break

        if contents is None:
            raise ConnectionFailure("no reply from daemon")
        if "Content-Length" not in headers:
            raise ElectrsError(f"Content-Length is missing: {headers!r}")
        length_text = headers["Content-Length"]
        if not (length_text.isascii() and length_text.isdigit()):
            raise ElectrsError(f"invalid Content-Length: {length_text!r}")
        expected_length = int(length_text) - 1  # the trailing end of line is dropped
        if expected_length != len(contents):
            raise ConnectionFailure(f"expected {expected_length} bytes, got {len(contents)}")

        try:
            text = contents.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ElectrsError("invalid UTF-8 reply") from exc

        if status == "HTTP/1.1 200 OK":
            return text
        if status == "HTTP/1.1 500 Internal Server Error":
            log.warning("HTTP status: %s", status)
            return text  # carries a JSON-RPC error field
        raise ElectrsError(f"request failed {status!r}: {headers!r} = {text!r}")


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class Daemon:
    """Client for the daemon's JSON-RPC interface, with batching and reconnection."""

    def __init__(
        self,
        daemon_dir: str | Path,
        blocks_dir: str | Path,
        daemon_rpc_addr: SocketAddr,
        cookie_getter: CookieGetter,
        network: Network,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.daemon_dir = Path(daemon_dir)
        self.blocks_dir = Path(blocks_dir)
        self.network = network
        self._stop = stop_event
        self._conn_lock = threading.Lock()
        self._conn = Connection(daemon_rpc_addr, cookie_getter, stop_event)
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        try:
            self._check_daemon()
        except BaseException:
            self.close()
            raise

    def _check_daemon(self) -> None:
        network_info = self.getnetworkinfo()
        log.info("%r", network_info)
        if network_info.version < MIN_DAEMON_VERSION:
            raise ElectrsError(
                f"{network_info.subversion} is not supported - please use bitcoind 0.16+"
            )
        blockchain_info = self.getblockchaininfo()
        log.info("%r", blockchain_info)
        if blockchain_info.pruned:
            raise ElectrsError("pruned node is not supported (use '-prune=0' bitcoind flag)")
        while True:
            info = self.getblockchaininfo()
            if not info.initialblockdownload and info.blocks == info.headers:
                return
            log.warning(
                "waiting for bitcoind sync to finish: %d/%d blocks, "
                "verification progress: %.3f%%",
                info.blocks,
                info.headers,
                info.verificationprogress * 100.0,
            )
            _wait(self._stop, SYNC_POLL_DELAY)

    def __enter__(self) -> Daemon:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()

    def reconnect(self) -> Daemon:
        """A new client on a fresh connection, with its own message ids."""
        with self._conn_lock:
            conn = self._conn.reconnect()
        clone = copy.copy(self)
        clone._conn = conn
        clone._conn_lock = threading.Lock()
        clone._ids = itertools.count(1)
        clone._id_lock = threading.Lock()
        return clone

    def list_blk_files(self) -> list[Path]:
        log.debug("listing block files at %s", self.blocks_dir / "blk*.dat")
        return sorted(self.blocks_dir.glob("blk*.dat"))

    def magic(self) -> int:
        return self.network.magic()

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def _call_jsonrpc(self, request: Any) -> Any:
        text = _compact_json(request)
        with self._conn_lock:
            self._conn.send(text)
            response = self._conn.recv()
        try:
            return json.loads(response)
        except ValueError as exc:
            raise ElectrsError("invalid JSON") from exc

    def _handle_request_batch(self, method: str, params_list: Sequence[Any]) -> list[Any]:
        message_id = self._next_id()
        results = []
        for chunk in _chunks(params_list, MAX_BATCH_SIZE):
            requests = [
                {"method": method, "params": params, "id": message_id} for params in chunk
            ]
            replies = self._call_jsonrpc(requests)
            if not isinstance(replies, list):
                raise ElectrsError(f"non-array replies: {replies!r}")
            results.extend(parse_jsonrpc_reply(reply, method, message_id) for reply in replies)
        return results

    def _retry_request_batch(self, method: str, params_list: Sequence[Any]) -> list[Any]:
        while True:
            try:
                return self._handle_request_batch(method, params_list)
            except ConnectionFailure as exc:
                log.warning("reconnecting to bitcoind: %s", exc)
                _wait(self._stop, RETRY_DELAY)
                with self._conn_lock:
                    old = self._conn
                    self._conn = old.reconnect()
                    old.close()

    def _request(self, method: str, params: Any) -> Any:
        values = self._retry_request_batch(method, [params])
        if len(values) != 1:
            raise ElectrsError(f"expected one {method} reply, got {len(values)}")
        return values[0]

    def _requests(self, method: str, params_list: Sequence[Any]) -> list[Any]:
        return self._retry_request_batch(method, params_list)

    def getblockchaininfo(self) -> BlockchainInfo:
        return BlockchainInfo.from_json(self._request("getblockchaininfo", []))

    def getnetworkinfo(self) -> NetworkInfo:
        return NetworkInfo.from_json(self._request("getnetworkinfo", []))

    def getbestblockhash(self) -> str:
        return _parse_hash(self._request("getbestblockhash", []))

    def getblockheader(self, blockhash: str) -> BlockHeader:
        return _header_from_value(self._request("getblockheader", [blockhash, False]))

    def getblockheaders(self, heights: Sequence[int]) -> list[BlockHeader]:
        hashes = self._requests("getblockhash", [[height] for height in heights])
        values = self._requests("getblockheader", [[h, False] for h in hashes])
        return [_header_from_value(value) for value in values]

    def getblock(self, blockhash: str) -> Block:
        block = _block_from_value(self._request("getblock", [blockhash, False]))
        if block.block_hash() != blockhash.lower():
            raise ElectrsError(
                f"block hash mismatch: requested {blockhash}, got {block.block_hash()}"
            )
        return block

    def getblock_raw(self, blockhash: str, verbose: int) -> Any:
        return self._request("getblock", [blockhash, verbose])

    def getblocks(self, blockhashes: Sequence[str]) -> list[Block]:
        values = self._requests("getblock", [[h, False] for h in blockhashes])
        return [_block_from_value(value) for value in values]

    def gettransactions(self, txhashes: Sequence[str]) -> list[bytes]:
        """Raw bytes of each transaction, in the order asked for."""
        values = self._requests("getrawtransaction", [[txid, False] for txid in txhashes])
        txs = [_tx_from_value(value) for value in values]
        if len(txs) != len(txhashes):
            raise ElectrsError(f"expected {len(txhashes)} transactions, got {len(txs)}")
        return txs

    def gettransaction_raw(self, txid: str, blockhash: str, verbose: bool) -> Any:
        return self._request("getrawtransaction", [txid, verbose, blockhash])

    def getmempooltx(self, txhash: str) -> bytes:
        return _tx_from_value(self._request("getrawtransaction", [txhash, False]))

    def getmempooltxids(self) -> set[str]:
        reply = self._request("getrawmempool", [False])
        if not isinstance(reply, list) or not all(_is_hash(txid) for txid in reply):
            raise ElectrsError("invalid getrawmempool reply")
        return {txid.lower() for txid in reply}

    def broadcast_raw(self, txhex: str) -> str:
        txid = self._request("sendrawtransaction", [txhex])
        if not isinstance(txid, str):
            raise ElectrsError("non-string txid")
        if not _is_hash(txid):
            raise ElectrsError("failed to parse txid")
        return txid.lower()

    def estimatesmartfee_batch(self, conf_targets: Sequence[int]) -> dict[int, float]:
        """Fee rates in sat/vB per confirmation target; missing estimates are left out."""
        replies = self._requests("estimatesmartfee", [[target] for target in conf_targets])
        rates: dict[int, float] = {}
        for reply, target in zip(replies, conf_targets):
            fields = reply if isinstance(reply, Mapping) else {}
            if fields.get("errors") is not None:
                log.warning("failed estimating fee for target %s: %r", target, fields["errors"])
                continue
            feerate = fields.get("feerate")
            if not _is_number(feerate):
                raise ElectrsError(f"invalid estimatesmartfee response: {reply!r}")
            if feerate == -1:
                log.warning("not enough data to estimate fee for target %s", target)
                continue
            rates[target] = feerate * 100_000  # BTC/kB to sat/B
        return rates

    def _get_all_headers(self, tip: str) -> list[BlockHeader]:
        info = self._request("getblockheader", [tip])
        if not isinstance(info, Mapping) or "height" not in info:
            raise ElectrsError("missing height")
        tip_height = info["height"]
        if not _is_count(tip_height):
            raise ElectrsError("non-numeric height")
        result: list[BlockHeader] = []
        for heights in _chunks(range(tip_height + 1), HEADERS_CHUNK_SIZE):
            log.debug("downloading %d block headers", len(heights))
            headers = self.getblockheaders(heights)
            if len(headers) != len(heights):
                raise ElectrsError(f"expected {len(heights)} headers, got {len(headers)}")
            result.extend(headers)

        blockhash = DEFAULT_BLOCKHASH
        for header in result:
            if header.prev_blockhash != blockhash:
                raise ElectrsError(f"header chain broken after {blockhash}")
            blockhash = header.block_hash()
        if blockhash != tip.lower():
            raise ElectrsError(f"headers end at {blockhash}, expected {tip}")
        return result

    def get_new_headers(
        self, indexed_headers: Collection[str], bestblockhash: str
    ) -> list[BlockHeader]:
        """Headers not yet indexed, oldest first; `indexed_headers` holds known block hashes."""
        if not indexed_headers:
            log.debug("downloading all block headers up to %s", bestblockhash)
            return self._get_all_headers(bestblockhash)
        log.debug(
            "downloading new block headers (%d already indexed) from %s",
            len(indexed_headers),
            bestblockhash,
        )
        new_headers: list[BlockHeader] = []
        blockhash = bestblockhash
        while blockhash != DEFAULT_BLOCKHASH and blockhash not in indexed_headers:
            try:
                header = self.getblockheader(blockhash)
            except Interrupted:
                raise
            except ElectrsError as exc:
                raise ElectrsError(f"failed to get {blockhash} header") from exc
            blockhash = header.prev_blockhash
            new_headers.append(header)
        log.debug("downloaded %d block headers", len(new_headers))
        new_headers.reverse()
        return new_headers

    def get_relayfee(self) -> float:
        """The daemon's minimum relay fee, in sat/vB."""
        return self.getnetworkinfo().relayfee * 100_000