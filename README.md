# esplorad

Core pieces of an Electrum/Esplora-style indexing server, as a plain Python
library with no third-party dependencies.

- **Chain parameters** (`esplorad.chain`): the `Network` enum (`mainnet`,
  `testnet`, `regtest`, `signet`) with message magic values and genesis block
  hashes, `sha256d`, and `BlockHeader` / `Block` parsing with block hashes in
  display (hex) order.
- **Configuration** (`esplorad.config`): `Config.from_args` parses the
  server's command-line options, fills in per-network default ports and
  directories, sets up logging on stderr, and provides the RPC cookie
  (`StaticCookie` from `--cookie`, otherwise `CookieFile` reading `.cookie`
  from the daemon directory).
- **bitcoind client** (`esplorad.daemon`): `Daemon`, a JSON-RPC client that
  batches requests, checks reply ids, and reconnects and retries when the
  node is warming up (error code -28) or the connection fails.
- **Electrum protocol types** (`esplorad.electrum`): `ProtocolVersion`,
  `ServerPorts`, `ServerFeatures`, `Service` and `get_electrum_height`.
- **Peer discovery** (`esplorad.discovery`, `esplorad.default_servers`):
  `DiscoveryManager`, a queue of health checks against seed servers and
  announced peers, keeping the healthy ones for `server.peers.subscribe`.
- **Errors** (`esplorad.errors`): `ElectrsError`, with the subclasses
  `ConnectionFailure` and `Interrupted`.

## Installation

Install with pip from a checkout of this project; the `test` extra adds
pytest.

## Usage

### Networks and blocks

```python
from esplorad.chain import Network, genesis_hash

network = Network.from_name("testnet")
print(Network.names())        # ['mainnet', 'testnet', 'regtest', 'signet']
print(hex(network.magic()))   # network message magic, little-endian
print(network.is_regtest())   # False
print(genesis_hash(network))  # testnet genesis block hash
```

`Network.from_name` raises `ValueError` for an unknown name.
`BlockHeader.from_bytes` takes exactly 80 bytes; `Block.from_bytes` reads the
header and keeps each transaction as raw bytes, raising `ValueError` on
truncated or trailing data.

### Configuration

```python
from esplorad.config import Config

config = Config.from_args(
    ["--network", "regtest", "--db-dir", "/tmp/db", "--cookie", "placeholder"]
)
print(config.daemon_rpc_addr)    # ('127.0.0.1', 18443)
print(config.electrum_rpc_addr)  # ('127.0.0.1', 60401)
print(config.db_path)            # /tmp/db/regtest

cookie = config.cookie_getter().get()  # b'placeholder'
```

`from_args` also prints the resulting configuration to stderr. Without
`--cookie`, the cookie is read from `.cookie` in the daemon directory
(`~/.bitcoin` plus the network's sub-directory, unless `--daemon-dir` is
given); a missing file raises `ConnectionFailure`.

### bitcoind client

```python
from esplorad.daemon import Daemon

with Daemon(config.daemon_dir, config.blocks_dir, config.daemon_rpc_addr,
            config.cookie_getter(), config.network_type) as daemon:
    tip = daemon.getbestblockhash()
    header = daemon.getblockheader(tip)
    fees = daemon.estimatesmartfee_batch([2, 6, 24])  # sat/vB per target
```

On construction the client rejects daemons older than 0.16 and pruned nodes,
and waits until the node has finished its initial sync. Pass a
`threading.Event` as `stop_event` to interrupt waits; they then raise
`Interrupted`. `get_new_headers` takes a collection of already-known block
hashes and returns the missing headers oldest first.

### Electrum protocol helpers

```python
from esplorad.electrum import ProtocolVersion, get_electrum_height

assert ProtocolVersion.parse("1.4") >= ProtocolVersion.parse("1.2")

get_electrum_height(700000, False)  # confirmed: the block height
get_electrum_height(None, False)    # in the mempool: 0
get_electrum_height(None, True)     # in the mempool with unconfirmed parents: -1
```

### Peer discovery

`DiscoveryManager` is seeded with the well-known servers of its network
(`default_servers`) and accepts `server.add_peer` requests through
`add_server_request`. A peer is accepted only if its genesis hash matches,
its protocol range includes our version, its hash function is `sha256`, its
address is remote and not our own, and its IP matches the announcing IP
(onion hosts are exempt). At most 3 hosts and 6 services are taken per
request, and the queue holds at most 500 jobs. `spawn_jobs_thread` runs one
health check per second in a background thread until `stop` is called;
`get_servers` returns `ServerEntry` objects whose `to_json` gives the
`server.peers.subscribe` form. Onion hosts are checked only when a SOCKS5
`tor_proxy` is configured.

## What this package does not do

It has no block or transaction index and no database, no Electrum RPC
server, no HTTP/REST server, no mempool tracking and no command to start a
server. It provides the configuration, the bitcoind client, the protocol
types and peer discovery such a server is built from.

## Running the tests

Install the `test` extra and run `pytest` from the project root.