"""
Block range partitioning and the range token arena.

Block positions form a line; a token covers ``[start, end)`` of it and the
last token of a window also owns ``end``. A token's ``current`` cursor
means every block below it (and the cursor block itself once a batch has
landed there) has been scanned. Batches scan ``[current, new_current]``
inclusive, so boundary blocks are scanned twice; event persistence is
idempotent, which makes that harmless.

All methods are synchronous and therefore atomic with respect to the
worker tasks sharing one event loop.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from pool_event_indexer.models.core import BlockRange

logger = logging.getLogger(__name__)


@dataclass
class RangeToken:
    """A schedulable slice of the run window."""
    token_id: int
    start: int
    end: int
    current: int
    owns_end: bool = False
    worker_id: Optional[int] = None
    inflight_end: Optional[int] = None
    finished: bool = False
    failed: bool = False

    @property
    def remaining(self) -> int:
        return max(self.end - self.current, 0)

    @property
    def assigned(self) -> bool:
        return self.worker_id is not None

    def reserve(self, max_blocks: int) -> int:
        """Mark the next batch as in flight and return its end block."""
        self.inflight_end = min(self.current + max_blocks, self.end)
        return self.inflight_end

    def as_range(self) -> BlockRange:
        return BlockRange(self.start, self.end, self.owns_end)


class BlockRangePartitioner:
    """
    Splits a block window across workers and hands out range tokens.

    Invariant: unfinished tokens are pairwise disjoint and their union is
    the unscanned remainder of the window.
    """

    def __init__(self, min_blocks_to_steal: int = 1):
        self.min_blocks_to_steal = max(1, min_blocks_to_steal)
        self.tokens: List[RangeToken] = []
        self.window_start: Optional[int] = None
        self.high_water: Optional[int] = None
        self._ids = itertools.count()

    @staticmethod
    def partition(genesis_block: int, target_block: int, worker_count: int) -> Optional[List[BlockRange]]:
        """
        Split ``[genesis_block, target_block]`` into contiguous ranges.

        Width is ``(target - genesis) // worker_count`` with the remainder
        going to the last range. With fewer blocks than workers, one range
        per block is produced.

        Returns:
            Ranges in ascending order, or None when there is nothing to scan
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")

        span = target_block - genesis_block
        if span <= 0:
            return None

        count = min(worker_count, span)
        width = span // count

        ranges = []
        for i in range(count):
            start = genesis_block + i * width
            last = i == count - 1
            end = target_block if last else start + width
            ranges.append(BlockRange(start, end, owns_end=last))
        return ranges

    # Arena lifecycle
    def open_window(self, start: int, end: int, worker_count: int) -> List[RangeToken]:
        """Replace the arena with fresh tokens for ``[start, end]``."""
        self.tokens = []
        self.window_start = start
        self.high_water = max(start, end)

        for block_range in self.partition(start, end, worker_count) or []:
            self.tokens.append(self._new_token(block_range.start, block_range.end, block_range.owns_end))

        logger.debug(f"Opened window {start}-{end} with {len(self.tokens)} tokens")
        return list(self.tokens)

    def resume(self) -> List[RangeToken]:
        """Unassign unfinished tokens so a new run can pick them up."""
        pending = []
        for token in self.tokens:
            if token.finished:
                continue
            token.worker_id = None
            token.inflight_end = None
            token.failed = False
            pending.append(token)
        return pending

    def clear(self) -> None:
        self.tokens = []
        self.window_start = None
        self.high_water = None

    def _new_token(self, start: int, end: int, owns_end: bool) -> RangeToken:
        return RangeToken(token_id=next(self._ids), start=start, end=end,
                          current=start, owns_end=owns_end)

    # Queries
    def unfinished(self) -> List[RangeToken]:
        return [token for token in self.tokens if not token.finished]

    def has_unfinished(self) -> bool:
        return any(not token.finished for token in self.tokens)

    def frontier(self) -> Optional[int]:
        """
        Highest block below which everything has been scanned.

        Minimum cursor over unfinished tokens, or the high-water mark when
        all tokens are finished.
        """
        pending = self.unfinished()
        if pending:
            return min(token.current for token in pending)
        return self.high_water

    def scanned_blocks(self) -> int:
        """Blocks scanned inside the current window, across all tokens."""
        return sum(token.current - token.start for token in self.tokens)

    def token_for(self, worker_id: int) -> Optional[RangeToken]:
        for token in self.tokens:
            if token.worker_id == worker_id and not token.finished:
                return token
        return None

    # Scheduling
    def acquire(self, worker_id: int) -> Optional[RangeToken]:
        """Hand the lowest unassigned token to a worker."""
        candidates = [
            token for token in self.tokens
            if not token.finished and not token.failed and not token.assigned
        ]
        if not candidates:
            return None

        token = min(candidates, key=lambda t: t.start)
        token.worker_id = worker_id
        return token

    def advance(self, token: RangeToken, block: int) -> None:
        """Move a token's cursor after a successful batch."""
        token.current = min(max(token.current, block), token.end)
        token.inflight_end = None
        if token.current >= token.end:
            token.finished = True

    def abort_batch(self, token: RangeToken) -> None:
        token.inflight_end = None

    def release(self, token: RangeToken) -> None:
        token.finished = True
        token.inflight_end = None

    def mark_failed(self, token: RangeToken) -> None:
        """Give a token up for this run; it stays unfinished and holds the frontier."""
        token.failed = True
        token.worker_id = None
        token.inflight_end = None

    def steal(self, worker_id: int) -> Optional[RangeToken]:
        """
        Split the busiest token and give its upper part to ``worker_id``.

        The donor is the unfinished assigned token with the most remaining
        blocks (ties go to the lowest worker id). The split never falls
        below the donor's in-flight batch end.

        Returns:
            The thief's new token, or None if nothing is worth stealing
        """
        donors = [
            token for token in self.tokens
            if token.assigned and not token.finished and not token.failed
            and token.worker_id != worker_id and token.remaining > 0
        ]
        if not donors:
            return None

        donor = min(donors, key=lambda t: (-t.remaining, t.worker_id))
        split = donor.end - donor.remaining // 2
        if donor.inflight_end is not None:
            split = max(split, donor.inflight_end)

        if donor.end - split < self.min_blocks_to_steal:
            return None

        stolen = self._new_token(split, donor.end, donor.owns_end)
        stolen.worker_id = worker_id
        donor.end = split
        donor.owns_end = False

        # Keep arena ordered by start for acquire() and readability
        self.tokens.append(stolen)
        self.tokens.sort(key=lambda t: (t.start, t.token_id))

        logger.debug(
            f"Worker {worker_id} stole blocks {stolen.start}-{stolen.end} from worker {donor.worker_id}"
        )
        return stolen

    def extend_tail(self, new_target: int) -> Optional[RangeToken]:
        """Append ``[high_water, new_target]`` when the chain head has moved on."""
        if self.high_water is None or new_target <= self.high_water:
            return None

        for token in self.tokens:
            if token.owns_end and token.end == self.high_water:
                token.owns_end = False

        token = self._new_token(self.high_water, new_target, owns_end=True)
        self.tokens.append(token)
        self.high_water = new_target

        logger.debug(f"Extended tail to {new_target}")
        return token

    def snapshot(self) -> List[Dict[str, int]]:
        return [
            {
                'start': token.start,
                'end': token.end,
                'current': token.current,
                'workerId': token.worker_id,
                'finished': token.finished,
            }
            for token in self.tokens
        ]
