"""Bounded thread parallelism with cooperative cancellation."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, TypeVar

from strmsync.errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """A flag passed down a call chain so callers can stop work early.

    A token may carry a deadline; once it passes the token reports itself
    as cancelled.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> CancelToken:
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled()


def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], None],
    *,
    limit: int,
    token: CancelToken | None = None,
) -> int:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    The token is checked before each item is admitted. On cancellation no
    further items start, in-flight items run to completion, and RunCancelled
    is raised. Returns the number of items admitted.

    Workers are expected to handle their own failures. An exception that
    escapes a worker is re-raised once all in-flight work has finished.
    """
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")

    gate = threading.BoundedSemaphore(limit)
    futures: list[Future[None]] = []
    admitted = 0
    cancelled = False

    def _guarded(item: T) -> None:
        try:
            worker(item)
        finally:
            gate.release()

    with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="strm-worker") as pool:
        for item in items:
            if token is not None and token.cancelled:
                cancelled = True
                break
            gate.acquire()
            # The slot may have been awaited for a while; re-check before starting.
            if token is not None and token.cancelled:
                gate.release()
                cancelled = True
                break
            futures.append(pool.submit(_guarded, item))
            admitted += 1

    # Leaving the executor context joins every submitted future.
    first_error: BaseException | None = None
    for fut in futures:
        exc = fut.exception()
        if exc is not None:
            logger.error("Worker raised unexpectedly: %s", exc)
            if first_error is None:
                first_error = exc
    if first_error is not None:
        raise first_error

    if cancelled:
        raise RunCancelled()
    return admitted
