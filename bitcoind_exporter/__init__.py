"""Prometheus exporter for bitcoind JSON-RPC state."""

__version__ = "0.1.0"
