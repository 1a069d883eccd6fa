"""Prometheus collectors for bitcoind RPC call families.

Each collector issues fresh RPC calls on every scrape and translates the
decoded responses into labeled samples. The descriptor set of a collector is
fixed at import time, independent of anything the daemon returns.
"""

import logging
from collections import namedtuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, UnknownMetricFamily

from .models import DecodeError, IndexInfo
from .rpc import RPCError

COUNTER = "counter"
GAUGE = "gauge"
UNTYPED = "untyped"

FAMILY_TYPES = {
    COUNTER: CounterMetricFamily,
    GAUGE: GaugeMetricFamily,
    UNTYPED: UnknownMetricFamily,
}


class Descriptor(namedtuple("Descriptor", ["name", "documentation", "labels", "kind"])):
    """Static metadata for one metric family."""

    __slots__ = ()

    def family(self):
        return FAMILY_TYPES[self.kind](self.name, self.documentation, labels=self.labels)


CHAIN_LABELS = ("chain",)

BLOCKCHAIN_BLOCKS = Descriptor(
    "bitcoind_blockchain_blocks", "Height of the most-work fully-validated chain", CHAIN_LABELS, COUNTER
)
BLOCKCHAIN_HEADERS = Descriptor(
    "bitcoind_blockchain_headers", "Current number of headers validated", CHAIN_LABELS, COUNTER
)
BLOCKCHAIN_DIFFICULTY = Descriptor(
    "bitcoind_blockchain_difficulty", "Current difficulty metric", CHAIN_LABELS, GAUGE
)
BLOCKCHAIN_MEDIAN_TIME = Descriptor(
    "bitcoind_blockchain_median_time", "Median time for the current best block", CHAIN_LABELS, GAUGE
)
BLOCKCHAIN_VERIFICATION_PROGRESS = Descriptor(
    "bitcoind_blockchain_verification_progress",
    "Estimate of verification progress on range [0..1]",
    CHAIN_LABELS,
    GAUGE,
)
BLOCKCHAIN_INITIAL_BLOCK_DOWNLOAD = Descriptor(
    "bitcoind_blockchain_initial_block_download",
    "Node is in Initial Block Download mode",
    CHAIN_LABELS,
    UNTYPED,
)
BLOCKCHAIN_SIZE_ON_DISK = Descriptor(
    "bitcoind_blockchain_size_on_disk",
    "Estimated size of the block and undo files on disk",
    CHAIN_LABELS,
    GAUGE,
)
BLOCKCHAIN_PRUNE_HEIGHT = Descriptor(
    "bitcoind_blockchain_prune_height",
    "Lowest-height complete block stored if pruning is enabled",
    CHAIN_LABELS,
    GAUGE,
)
BLOCKCHAIN_PRUNED = Descriptor(
    "bitcoind_blockchain_pruned", "Pruning is enabled", CHAIN_LABELS, UNTYPED
)

MEMPOOL_SIZE = Descriptor(
    "bitcoind_mempool_size", "Current mempool transaction count", CHAIN_LABELS, GAUGE
)
MEMPOOL_BYTES = Descriptor(
    "bitcoind_mempool_bytes",
    "Sum of all virtual transaction sizes as defined in BIP 141",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_USAGE = Descriptor(
    "bitcoind_mempool_usage", "Total memory usage for the mempool", CHAIN_LABELS, GAUGE
)
MEMPOOL_TOTAL_FEE = Descriptor(
    "bitcoind_mempool_total_fee",
    "Total fees for the mempool in BTC, ignoring modified fees through prioritisetransaction",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_MAX_BYTES = Descriptor(
    "bitcoind_mempool_max_bytes", "Maximum memory usage for the mempool", CHAIN_LABELS, GAUGE
)
MEMPOOL_MIN_FEE = Descriptor(
    "bitcoind_mempool_min_fee",
    "Minimum fee rate in BTC/kvB for transactions to be accepted",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_MIN_RELAY_TX_FEE = Descriptor(
    "bitcoind_mempool_min_relay_tx_fee",
    "Current minimum relay fee for transactions in BTC/kvB",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_INCREMENTAL_RELAY_FEE = Descriptor(
    "bitcoind_mempool_incremental_relay_fee",
    "Minimum fee rate increment for mempool limiting or replacement in BTC/kvB",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_UNBROADCAST_COUNT = Descriptor(
    "bitcoind_mempool_unbroadcast_count",
    "Current number of transactions that haven't passed initial broadcast yet",
    CHAIN_LABELS,
    GAUGE,
)
MEMPOOL_FULLRBF = Descriptor(
    "bitcoind_mempool_fullrbf",
    "Mempool accepts RBF without replaceability signaling inspection",
    CHAIN_LABELS,
    UNTYPED,
)

PEER_LABELS = ("chain", "peer_id", "peer_addr", "peer_transport", "peer_version")
PEER_MSG_LABELS = PEER_LABELS + ("msg_type",)

PEER_LAST_SEND = Descriptor(
    "bitcoind_peer_last_send", "UNIX epoch time of the last message sent to the peer", PEER_LABELS, GAUGE
)
PEER_LAST_RECV = Descriptor(
    "bitcoind_peer_last_recv",
    "UNIX epoch time of the last message received from the peer",
    PEER_LABELS,
    GAUGE,
)
PEER_LAST_TRANSACTION = Descriptor(
    "bitcoind_peer_last_transaction",
    "UNIX epoch time of the last valid transaction received from the peer",
    PEER_LABELS,
    GAUGE,
)
PEER_LAST_BLOCK = Descriptor(
    "bitcoind_peer_last_block",
    "UNIX epoch time of the last block received from the peer",
    PEER_LABELS,
    GAUGE,
)
PEER_BYTES_SENT = Descriptor(
    "bitcoind_peer_bytes_sent", "Total bytes sent to the peer", PEER_LABELS, GAUGE
)
PEER_BYTES_RECV = Descriptor(
    "bitcoind_peer_bytes_recv", "Total bytes received from the peer", PEER_LABELS, GAUGE
)
PEER_TIME_OFFSET = Descriptor(
    "bitcoind_peer_time_offset", "Time offset in seconds from the peer", PEER_LABELS, GAUGE
)
PEER_PING_TIME = Descriptor(
    "bitcoind_peer_ping_time", "Ping time to the peer in seconds", PEER_LABELS, GAUGE
)
PEER_PING_MIN = Descriptor(
    "bitcoind_peer_ping_min", "Minimum observed ping time to the peer in seconds", PEER_LABELS, GAUGE
)
PEER_STARTING_HEIGHT = Descriptor(
    "bitcoind_peer_starting_height", "Starting height (block) of the peer", PEER_LABELS, GAUGE
)
PEER_PRESYNCED_HEADERS = Descriptor(
    "bitcoind_peer_presynced_headers",
    "Current height of header pre-synchronization with the peer, or -1 if no low-work sync is in progress",
    PEER_LABELS,
    COUNTER,
)
PEER_SYNCED_HEADERS = Descriptor(
    "bitcoind_peer_synced_headers", "Last header we have in common with the peer", PEER_LABELS, COUNTER
)
PEER_SYNCED_BLOCKS = Descriptor(
    "bitcoind_peer_synced_blocks", "Last block we have in common with the peer", PEER_LABELS, COUNTER
)
PEER_ADDR_PROCESSED = Descriptor(
    "bitcoind_peer_addr_processed",
    "Total number of addresses processed, excluding those dropped due to rate limiting",
    PEER_LABELS,
    COUNTER,
)
PEER_ADDR_RATE_LIMITED = Descriptor(
    "bitcoind_peer_addr_rate_limited",
    "Total number of addresses dropped due to rate limiting",
    PEER_LABELS,
    COUNTER,
)
PEER_BYTES_SENT_PER_MSG = Descriptor(
    "bitcoind_peer_bytes_sent_per_msg",
    "Total bytes sent to the peer aggregated by message type",
    PEER_MSG_LABELS,
    COUNTER,
)
PEER_BYTES_RECV_PER_MSG = Descriptor(
    "bitcoind_peer_bytes_recv_per_msg",
    "Total bytes received from the peer aggregated by message type",
    PEER_MSG_LABELS,
    COUNTER,
)

INDEX_LABELS = ("chain", "index")

INDEX_SYNCED = Descriptor(
    "bitcoind_index_synced", "Whether the index is synced or not", INDEX_LABELS, UNTYPED
)
INDEX_BEST_BLOCK_HEIGHT = Descriptor(
    "bitcoind_index_best_block_height",
    "Block height to which the index is synced",
    INDEX_LABELS,
    COUNTER,
)


def flag(value):
    return 1.0 if value else 0.0


class RPCCollector:
    """Base for collectors built from one family of RPC calls.

    Subclasses list their descriptors, fetch and decode their responses in
    ``fetch`` and translate them in ``samples``. A failed fetch is logged and
    the collector contributes nothing to that scrape.
    """

    name = None
    descriptors = ()

    def __init__(self, client, logger=None):
        self.client = client
        self.logger = logger or logging.getLogger(f"bitcoind_exporter.collector.{self.name}")

    def describe(self):
        return [desc.family() for desc in self.descriptors]

    def collect(self):
        try:
            response = self.fetch()
        except (RPCError, DecodeError) as e:
            self.logger.error(
                "Collection failed collector=%s method=%s error=%s",
                self.name,
                e.method,
                e,
                extra={"collector": self.name, "method": e.method, "error": str(e)},
            )
            return

        families = {desc: desc.family() for desc in self.descriptors}
        for desc, labels, value in self.samples(response):
            families[desc].add_metric(labels, value)

        for family in families.values():
            if family.samples:
                yield family

    def fetch(self):
        raise NotImplementedError

    def samples(self, response):
        raise NotImplementedError


class BlockchainCollector(RPCCollector):
    name = "blockchain"
    descriptors = (
        BLOCKCHAIN_BLOCKS,
        BLOCKCHAIN_HEADERS,
        BLOCKCHAIN_DIFFICULTY,
        BLOCKCHAIN_MEDIAN_TIME,
        BLOCKCHAIN_VERIFICATION_PROGRESS,
        BLOCKCHAIN_INITIAL_BLOCK_DOWNLOAD,
        BLOCKCHAIN_SIZE_ON_DISK,
        BLOCKCHAIN_PRUNE_HEIGHT,
        BLOCKCHAIN_PRUNED,
    )

    def fetch(self):
        return self.client.get_blockchain_info()

    def samples(self, info):
        labels = [info.chain]
        yield BLOCKCHAIN_BLOCKS, labels, info.blocks
        yield BLOCKCHAIN_HEADERS, labels, info.headers
        yield BLOCKCHAIN_DIFFICULTY, labels, info.difficulty
        yield BLOCKCHAIN_MEDIAN_TIME, labels, info.median_time
        yield BLOCKCHAIN_VERIFICATION_PROGRESS, labels, info.verification_progress
        yield BLOCKCHAIN_INITIAL_BLOCK_DOWNLOAD, labels, flag(info.initial_block_download)
        yield BLOCKCHAIN_SIZE_ON_DISK, labels, info.size_on_disk
        yield BLOCKCHAIN_PRUNE_HEIGHT, labels, info.prune_height
        yield BLOCKCHAIN_PRUNED, labels, flag(info.pruned)


class MempoolCollector(RPCCollector):
    name = "mempool"
    descriptors = (
        MEMPOOL_SIZE,
        MEMPOOL_BYTES,
        MEMPOOL_USAGE,
        MEMPOOL_TOTAL_FEE,
        MEMPOOL_MAX_BYTES,
        MEMPOOL_MIN_FEE,
        MEMPOOL_MIN_RELAY_TX_FEE,
        MEMPOOL_INCREMENTAL_RELAY_FEE,
        MEMPOOL_UNBROADCAST_COUNT,
        MEMPOOL_FULLRBF,
    )

    def fetch(self):
        chain = self.client.get_blockchain_info().chain
        return chain, self.client.get_mempool_info()

    def samples(self, response):
        chain, info = response
        labels = [chain]
        yield MEMPOOL_SIZE, labels, info.size
        yield MEMPOOL_BYTES, labels, info.bytes
        yield MEMPOOL_USAGE, labels, info.usage
        yield MEMPOOL_TOTAL_FEE, labels, info.total_fee
        yield MEMPOOL_MAX_BYTES, labels, info.max_bytes
        yield MEMPOOL_MIN_FEE, labels, info.min_fee
        yield MEMPOOL_MIN_RELAY_TX_FEE, labels, info.min_relay_tx_fee
        yield MEMPOOL_INCREMENTAL_RELAY_FEE, labels, info.incremental_relay_fee
        yield MEMPOOL_UNBROADCAST_COUNT, labels, info.unbroadcast_count
        yield MEMPOOL_FULLRBF, labels, flag(info.full_rbf)


class PeersCollector(RPCCollector):
    name = "peers"
    descriptors = (
        PEER_LAST_SEND,
        PEER_LAST_RECV,
        PEER_LAST_TRANSACTION,
        PEER_LAST_BLOCK,
        PEER_BYTES_SENT,
        PEER_BYTES_RECV,
        PEER_TIME_OFFSET,
        PEER_PING_TIME,
        PEER_PING_MIN,
        PEER_STARTING_HEIGHT,
        PEER_PRESYNCED_HEADERS,
        PEER_SYNCED_HEADERS,
        PEER_SYNCED_BLOCKS,
        PEER_ADDR_PROCESSED,
        PEER_ADDR_RATE_LIMITED,
        PEER_BYTES_SENT_PER_MSG,
        PEER_BYTES_RECV_PER_MSG,
    )

    def fetch(self):
        chain = self.client.get_blockchain_info().chain
        return chain, self.client.get_peer_info()

    def samples(self, response):
        chain, peers = response
        for peer in peers:
            labels = [chain, format(peer.id, "x"), peer.addr, peer.network, peer.subver]

            yield PEER_LAST_SEND, labels, peer.last_send
            yield PEER_LAST_RECV, labels, peer.last_recv
            yield PEER_LAST_TRANSACTION, labels, peer.last_transaction
            yield PEER_LAST_BLOCK, labels, peer.last_block
            yield PEER_BYTES_SENT, labels, peer.bytes_sent
            yield PEER_BYTES_RECV, labels, peer.bytes_recv
            yield PEER_TIME_OFFSET, labels, peer.time_offset
            yield PEER_PING_TIME, labels, peer.ping_time
            yield PEER_PING_MIN, labels, peer.ping_min
            yield PEER_STARTING_HEIGHT, labels, peer.starting_height
            yield PEER_PRESYNCED_HEADERS, labels, peer.presynced_headers
            yield PEER_SYNCED_HEADERS, labels, peer.synced_headers
            yield PEER_SYNCED_BLOCKS, labels, peer.synced_blocks
            yield PEER_ADDR_PROCESSED, labels, peer.addr_processed
            yield PEER_ADDR_RATE_LIMITED, labels, peer.addr_rate_limited

            for msg_type, count in sorted(peer.bytes_sent_per_msg.items()):
                yield PEER_BYTES_SENT_PER_MSG, labels + [msg_type], count
            for msg_type, count in sorted(peer.bytes_recv_per_msg.items()):
                yield PEER_BYTES_RECV_PER_MSG, labels + [msg_type], count


class IndexCollector(RPCCollector):
    name = "index"
    descriptors = (INDEX_SYNCED, INDEX_BEST_BLOCK_HEIGHT)

    def fetch(self):
        chain = self.client.get_blockchain_info().chain
        # No typed wrapper for getindexinfo; decode the raw result here
        return chain, IndexInfo.from_result(self.client.call("getindexinfo"))

    def samples(self, response):
        chain, indexes = response
        for name, index in sorted(indexes.items()):
            labels = [chain, name]
            yield INDEX_SYNCED, labels, flag(index.synced)
            yield INDEX_BEST_BLOCK_HEIGHT, labels, index.best_block_height
