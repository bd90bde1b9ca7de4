"""
Data models for the pool event indexer.
"""

from .core import (
    AutoRunConfig,
    BatchResult,
    BlockRange,
    CheckpointStatus,
    DecodedEvent,
    IndexerCheckpoint,
    ProgressSnapshot,
    RunResult,
    WorkerState,
    utcnow,
)

__all__ = [
    'AutoRunConfig',
    'BatchResult',
    'BlockRange',
    'CheckpointStatus',
    'DecodedEvent',
    'IndexerCheckpoint',
    'ProgressSnapshot',
    'RunResult',
    'WorkerState',
    'utcnow',
]
