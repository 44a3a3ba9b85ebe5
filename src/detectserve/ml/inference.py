"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> decode/infer/filter

Request bodies are read on the event loop; the blocking pipeline for each
request runs on one worker thread. Requests beyond the semaphore limit wait up
to ``queue_timeout`` seconds for a slot, then fail with TimeoutError.

Cancellation (a client disconnecting mid-request) releases the slot as soon as
the awaiting task is cancelled, but the worker thread cannot be interrupted and
runs its call to completion. Until it does, the number of busy threads can
exceed the number of held slots; the executor's own ``max_workers`` still caps
them, so later requests queue inside the executor rather than oversubscribing.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from detectserve.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds in-flight work and keeps it off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._max_concurrent = settings.max_concurrent
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="detect-worker",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the worker pool.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs (max_concurrent=%d)", self._timeout, self._max_concurrent)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of requests currently on a worker."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for running work, then stop the workers."""
        self._executor.shutdown(wait=True)
