"""
Pool Event Indexer.

Parallel, resumable blockchain event indexer with per-pool checkpointing,
work-stealing worker pools and auto-run scheduling.
"""

__version__ = "0.1.0"
__author__ = "Pool Event Indexer Team"
