"""Core components of an Electrum/Esplora indexing server: chain parameters,
configuration, a bitcoind JSON-RPC client and Electrum peer discovery."""

__version__ = "0.1.0"

__all__ = ["chain", "config", "daemon", "default_servers", "discovery", "electrum", "errors"]