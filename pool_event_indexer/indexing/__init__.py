"""
Parallel, resumable event indexing.
"""

from .coordinator import Coordinator
from .decoder import ChainEventSource, EventDecoder, TopicTableDecoder, event_topic, uint_topic
from .partitioner import BlockRangePartitioner, RangeToken
from .registry import IndexerRegistry
from .status import EtaEstimator, StatusDTO, StatusProjector, estimate_from_snapshots, format_eta
from .worker import WorkerSlot

__all__ = [
    "Coordinator",
    "ChainEventSource",
    "EventDecoder",
    "TopicTableDecoder",
    "event_topic",
    "uint_topic",
    "BlockRangePartitioner",
    "RangeToken",
    "IndexerRegistry",
    "EtaEstimator",
    "StatusDTO",
    "StatusProjector",
    "estimate_from_snapshots",
    "format_eta",
    "WorkerSlot",
]
