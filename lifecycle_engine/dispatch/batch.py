"""
Bounded batch runner for bulk jobs (manual bulk actions, re-immersion).

Items are processed in consecutive slices of ``batch_size``. A
CancellationToken is checked before every batch, so cancellation takes
effect between batches; the returned ``next_offset`` lets a later call
resume where the previous one stopped.

Usage:
    runner = BatchRunner(batch_size=50)
    progress = runner.run(user_ids, immerse_one)
    if progress.cancelled:
        progress = runner.run(user_ids, immerse_one, offset=progress.next_offset)
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from lifecycle_engine.logger import logger
from lifecycle_engine.settings import settings

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation signal shared between a job and its controller."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchProgress(Generic[R]):
    """
    Attributes:
        processed: Items processed by this run
        next_offset: Offset to resume from (== len(items) when done)
        cancelled: Stopped early because the token was cancelled
        results: Results of this run, in item order
        batches: Batches processed by this run
    """
    processed: int = 0
    next_offset: int = 0
    cancelled: bool = False
    results: List[R] = field(default_factory=list)
    batches: int = 0
    total: int = 0

    @property
    def done(self) -> bool:
        return self.next_offset >= self.total

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "nextOffset": self.next_offset,
            "cancelled": self.cancelled,
            "batches": self.batches,
            "total": self.total,
            "done": self.done,
        }


class BatchRunner:
    """Runs a function over items in bounded batches."""

    def __init__(
        self,
        batch_size: Optional[int] = None,
        parallel: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.batch_size = int(batch_size or settings.get_nested("dispatch.batch_size", 50))
        self.parallel = int(parallel or settings.get_nested("dispatch.parallel", 1))
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.parallel < 1:
            raise ValueError("parallel must be >= 1")
        self.token = token or CancellationToken()

    def cancel(self) -> None:
        self.token.cancel()

    def _run_batch(self, batch: Sequence[T], fn: Callable[[T], R]) -> List[R]:
        if self.parallel == 1 or len(batch) == 1:
            return [fn(item) for item in batch]
        with ThreadPoolExecutor(max_workers=min(self.parallel, len(batch))) as pool:
            return list(pool.map(fn, batch))

    def run(
        self,
        items: Sequence[T],
        fn: Callable[[T], R],
        offset: int = 0,
        max_batches: Optional[int] = None,
        on_batch: Optional[Callable[[BatchProgress], Any]] = None,
    ) -> BatchProgress[R]:
        """
        Process ``items[offset:]`` batch by batch.

        Args:
            items: Full item list (the offset indexes into it)
            fn: Called once per item; results keep item order
            offset: Where to start (a previous ``next_offset``)
            max_batches: Stop after this many batches (pausing)
            on_batch: Called with the running progress after each batch
        """
        if offset < 0:
            raise ValueError("offset must be >= 0")
        progress: BatchProgress[R] = BatchProgress(next_offset=offset, total=len(items))

        while progress.next_offset < len(items):
            if self.token.cancelled:
                progress.cancelled = True
                logger.event(
                    "batch_cancelled",
                    next_offset=progress.next_offset,
                    processed=progress.processed,
                    total=len(items),
                )
                break
            if max_batches is not None and progress.batches >= max_batches:
                break

            start = progress.next_offset
            batch = items[start:start + self.batch_size]
            progress.results.extend(self._run_batch(batch, fn))
            progress.processed += len(batch)
            progress.next_offset = start + len(batch)
            progress.batches += 1

            if on_batch is not None:
                on_batch(progress)

        return progress


__all__ = [
    "CancellationToken",
    "BatchProgress",
    "BatchRunner",
]
