"""Decoded bitcoind RPC responses.

Fields missing from older daemon versions decode to their defaults, so a
v0.21 node and a v27 node produce the same structures. Any malformed value
raises DecodeError for that one response.
"""

import math
from dataclasses import dataclass, field, fields


class DecodeError(ValueError):
    """An RPC result could not be decoded into its response structure."""

    def __init__(self, method, message):
        super().__init__(message)
        self.method = method


def _bool(value):
    if not isinstance(value, bool):
        raise TypeError(f"expected boolean, got {type(value).__name__}")
    return value


def _str(value):
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def _int(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected integer, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"expected integer, got {value}")
    return int(value)


def _float(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected number, got {type(value).__name__}")
    return float(value)


def _counts(value):
    if not isinstance(value, dict):
        raise TypeError(f"expected object, got {type(value).__name__}")
    return {_str(key): _int(count) for key, count in value.items()}


def _json(key, convert, default):
    return field(default=default, metadata={"key": key, "convert": convert})


def _decode(cls, method, data):
    if not isinstance(data, dict):
        raise DecodeError(method, f"expected object, got {type(data).__name__}")

    values = {}
    for f in fields(cls):
        key = f.metadata["key"]
        raw = data.get(key)
        if raw is None:
            continue
        try:
            values[f.name] = f.metadata["convert"](raw)
        except (TypeError, ValueError) as e:
            raise DecodeError(method, f"field {key!r}: {e}") from e

    return cls(**values)


@dataclass(frozen=True)
class BlockchainInfo:
    chain: str = _json("chain", _str, "")
    blocks: int = _json("blocks", _int, 0)
    headers: int = _json("headers", _int, 0)
    difficulty: float = _json("difficulty", _float, 0.0)
    median_time: int = _json("mediantime", _int, 0)
    verification_progress: float = _json("verificationprogress", _float, 0.0)
    initial_block_download: bool = _json("initialblockdownload", _bool, False)
    size_on_disk: int = _json("size_on_disk", _int, 0)
    pruned: bool = _json("pruned", _bool, False)
    # Only reported by pruned nodes
    prune_height: int = _json("pruneheight", _int, 0)

    @classmethod
    def from_result(cls, result):
        return _decode(cls, "getblockchaininfo", result)


@dataclass(frozen=True)
class MempoolInfo:
    full_rbf: bool = _json("fullrbf", _bool, False)
    size: int = _json("size", _int, 0)
    bytes: int = _json("bytes", _int, 0)
    usage: int = _json("usage", _int, 0)
    total_fee: float = _json("total_fee", _float, 0.0)
    max_bytes: int = _json("maxmempool", _int, 0)
    min_fee: float = _json("mempoolminfee", _float, 0.0)
    min_relay_tx_fee: float = _json("minrelaytxfee", _float, 0.0)
    incremental_relay_fee: float = _json("incrementalrelayfee", _float, 0.0)
    unbroadcast_count: int = _json("unbroadcastcount", _int, 0)

    @classmethod
    def from_result(cls, result):
        return _decode(cls, "getmempoolinfo", result)


@dataclass(frozen=True)
class PeerInfo:
    id: int = _json("id", _int, 0)
    addr: str = _json("addr", _str, "")
    network: str = _json("network", _str, "")
    subver: str = _json("subver", _str, "")
    last_send: int = _json("lastsend", _int, 0)
    last_recv: int = _json("lastrecv", _int, 0)
    last_transaction: int = _json("last_transaction", _int, 0)
    last_block: int = _json("last_block", _int, 0)
    bytes_sent: int = _json("bytessent", _int, 0)
    bytes_recv: int = _json("bytesrecv", _int, 0)
    time_offset: int = _json("timeoffset", _int, 0)
    ping_time: float = _json("pingtime", _float, 0.0)
    ping_min: float = _json("minping", _float, 0.0)
    starting_height: int = _json("startingheight", _int, 0)
    presynced_headers: int = _json("presynced_headers", _int, 0)
    synced_headers: int = _json("synced_headers", _int, 0)
    synced_blocks: int = _json("synced_blocks", _int, 0)
    addr_processed: int = _json("addr_processed", _int, 0)
    addr_rate_limited: int = _json("addr_rate_limited", _int, 0)
    bytes_sent_per_msg: dict = field(
        default_factory=dict, metadata={"key": "bytessent_per_msg", "convert": _counts}
    )
    bytes_recv_per_msg: dict = field(
        default_factory=dict, metadata={"key": "bytesrecv_per_msg", "convert": _counts}
    )

    @classmethod
    def from_result(cls, result):
        if not isinstance(result, list):
            raise DecodeError("getpeerinfo", f"expected array, got {type(result).__name__}")
        return [_decode(cls, "getpeerinfo", peer) for peer in result]


@dataclass(frozen=True)
class IndexInfo:
    synced: bool = _json("synced", _bool, False)
    best_block_height: int = _json("best_block_height", _int, 0)

    @classmethod
    def from_result(cls, result):
        """Decode the getindexinfo mapping of index name to index state."""
        if not isinstance(result, dict):
            raise DecodeError("getindexinfo", f"expected object, got {type(result).__name__}")
        return {name: _decode(cls, "getindexinfo", props) for name, props in result.items()}
