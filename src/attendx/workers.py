"""Bounded execution of blocking work with caller-supplied timeouts.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> extraction / store / matching

Every call gets one deadline covering both the wait for a slot and the run
itself. Exceeding it raises OperationTimeout, which the API reports as a
retryable 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from attendx.errors import OperationTimeout

if TYPE_CHECKING:
    from collections.abc import Callable

    from attendx.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerPool:
    """Manages the semaphore and thread pool for blocking operations."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="attendx-worker",
        )
        self._default_timeout = settings.operation_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object, timeout: float | None = None) -> T:
        """Run a synchronous function in the pool within ``timeout`` seconds.

        Raises:
            OperationTimeout: If no slot frees up, or the function does not
                finish, before the deadline.
        """
        budget = self._default_timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        name = getattr(func, "__name__", repr(func))

        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=budget)
        except TimeoutError:
            logger.warning("No worker slot for %s within %.1fs", name, budget)
            raise OperationTimeout(f"Server busy: no worker available within {budget:.1f}s") from None
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, func, *args)
            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                return await asyncio.wait_for(future, timeout=remaining)
            except TimeoutError:
                logger.warning("%s did not finish within %.1fs", name, budget)
                raise OperationTimeout(f"Operation did not complete within {budget:.1f}s") from None
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running operations."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
