"""
Scheduling for periodic indexer runs.
"""

from .scheduler import AutoRunScheduler, job_id_for

__all__ = [
    "AutoRunScheduler",
    "job_id_for",
]
