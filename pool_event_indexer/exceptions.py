"""
Exception hierarchy for the indexer.

Transient errors (provider and persistence failures) are retried on the
next scheduling tick. Fatal errors stop the run and halt auto-run until an
operator retriggers or resets the indexer.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexer errors."""

    transient = False
    fatal = False

    def __init__(self, message: str, domain: Optional[str] = None, pid: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.pid = pid


class AlreadyRunning(IndexerError):
    """Raised when a run or auto-run is already active for a pool."""


class ResetWhileRunning(IndexerError):
    """Raised when a reset is requested while workers or auto-run are active."""


class UnknownIndexerError(IndexerError):
    """Raised for a domain or pool id that is not configured."""


class ProviderError(IndexerError):
    """Chain data provider call failed (RPC error, HTTP error, bad payload)."""

    transient = True


class ProviderTimeout(ProviderError):
    """Chain data provider call did not finish within its time budget."""


class PersistError(IndexerError):
    """Writing decoded events to the event store failed."""

    transient = True


class DecodeError(IndexerError):
    """Malformed event data; fatal for the batch and the run."""

    fatal = True


class BatchCrashed(IndexerError):
    """A batch failed with an unexpected (non-indexer) exception; fatal for the run."""

    fatal = True
