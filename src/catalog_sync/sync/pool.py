"""Bounded worker pool over a shared cursor."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import TypeVar

from catalog_sync.sync.models import BatchEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 10
DEFAULT_CONCURRENCY = 5


class CancellationToken:
    """Cooperative stop flag with an optional monotonic deadline.

    Workers check it before claiming the next index; work already claimed is
    allowed to finish.
    """

    def __init__(
        self,
        *,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = None if deadline_seconds is None else clock() + deadline_seconds

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._event.is_set()

    @property
    def deadline_expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def should_stop(self) -> bool:
        return self.cancel_requested or self.deadline_expired


class _Cursor:
    """Shared claim counter; one read-and-increment per claim."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> int | None:
        with self._lock:
            if self._next >= self._size:
                return None
            index = self._next
            self._next += 1
            return index

    def drain(self) -> list[int]:
        """Claim every remaining index at once (used after cancellation)."""

        with self._lock:
            remaining = list(range(self._next, self._size))
            self._next = self._size
            return remaining


def run_bounded(
    items: Sequence[T],
    processor: Callable[[T, int], R],
    concurrency: int = DEFAULT_CONCURRENCY,
    *,
    cancel_token: CancellationToken | None = None,
    index_offset: int = 0,
) -> list[BatchEntry[R]]:
    """Run ``processor`` over ``items`` with at most ``concurrency`` in flight.

    Returns exactly one entry per item, in input order. A processor failure is
    recorded at its index and does not stop the worker. Items left unclaimed
    because ``cancel_token`` fired come back as cancelled entries.
    ``index_offset`` shifts both the index passed to ``processor`` and the
    entry index, so chunked callers keep global positions.
    """

    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    results: list[BatchEntry[R] | None] = [None] * len(items)
    if not items:
        return []

    cursor = _Cursor(len(items))

    def _worker() -> None:
        while True:
            if cancel_token is not None and cancel_token.should_stop():
                return
            index = cursor.claim()
            if index is None:
                return
            global_index = index + index_offset
            try:
                value = processor(items[index], global_index)
            except Exception as error:  # noqa: BLE001
                results[index] = BatchEntry(index=global_index, error=error)
            else:
                results[index] = BatchEntry(index=global_index, value=value)

    workers = [
        threading.Thread(target=_worker, name=f"sync-worker-{number}", daemon=True)
        for number in range(min(concurrency, len(items)))
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    for index in cursor.drain():
        results[index] = BatchEntry(index=index + index_offset, cancelled=True)

    missing = [index for index, entry in enumerate(results) if entry is None]
    if missing:
        raise RuntimeError(f"Worker pool left result slots unfilled: {missing}")
    return [entry for entry in results if entry is not None]


def run_batched(
    items: Sequence[T],
    processor: Callable[[T, int], R],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_token: CancellationToken | None = None,
) -> list[BatchEntry[R]]:
    """Run :func:`run_bounded` chunk by chunk and concatenate the results."""

    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    results: list[BatchEntry[R]] = []
    for start in range(0, len(items), batch_size):
        chunk = items[start : start + batch_size]
        if cancel_token is not None and cancel_token.should_stop():
            results.extend(
                BatchEntry(index=start + offset, cancelled=True) for offset in range(len(chunk))
            )
            continue
        logger.debug("Dispatching batch %d-%d of %d", start, start + len(chunk), len(items))
        results.extend(
            run_bounded(
                chunk,
                processor,
                concurrency,
                cancel_token=cancel_token,
                index_offset=start,
            ),
        )
    return results
