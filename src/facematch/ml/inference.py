"""Isolated execution context for verification work.

Architecture:
    caller (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> worker

Parallel native inference runs exhaust OS threads and crash the host, so at
most N (default 3) isolated jobs execute at once. Further callers wait for a
permit; with ``isolated_acquire_timeout`` set they give up after that many
seconds instead.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from facematch.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for isolated verifications."""

    def __init__(self, settings: Settings) -> None:
        self._permits = settings.max_concurrent_verifications
        self._acquire_timeout = settings.isolated_acquire_timeout
        self._semaphore = asyncio.Semaphore(self._permits)
        self._executor = ThreadPoolExecutor(
            max_workers=self._permits,
            thread_name_prefix="facematch-isolated",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the isolated thread pool.

        The permit is acquired before dispatch and always released afterwards.

        Raises:
            TimeoutError: If an acquire timeout is configured and no permit frees up in time.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            if self._acquire_timeout is None:
                await self._semaphore.acquire()
            else:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=self._acquire_timeout)
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
    def permits(self) -> int:
        return self._permits

    @property
    def active_count(self) -> int:
        """Number of isolated jobs currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for a permit."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
        logger.info("Isolated verification pool shut down")
