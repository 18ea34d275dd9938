"""BizArchive - Blocking Work Pool.

ZIP writes, boto3 calls and SQL run on worker threads. During an export run
they go to a pool owned by that run, so the run can abandon threads that are
still stuck when its deadline and grace period have passed. Outside a run
they fall back to ``asyncio.to_thread``.
"""

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import ContextVar
from typing import Any, Callable, List, Optional, Set

from bizarchive.core.logging import get_logger

logger = get_logger("core.blocking")

THREAD_PREFIX = "bizarchive-io"


class BlockingPool:
    """Thread pool for one export run that tracks its in-flight calls."""

    def __init__(self, max_workers: int):
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix=THREAD_PREFIX
        )
        self._in_flight: Set[Future] = set()
        self._lock = threading.Lock()

    def _track(self, future: Future) -> None:
        with self._lock:
            self._in_flight.add(future)

    def _done(self, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(func, *args)
        self._track(future)
        future.add_done_callback(self._done)
        return await asyncio.wrap_future(future)

    @property
    def busy(self) -> int:
        with self._lock:
            return sum(1 for future in self._in_flight if future.running())

    def shutdown(self) -> int:
        """Stop the pool. Returns how many calls were still running and left behind."""
        busy = self.busy
        if busy:
            logger.error(f"Abandoning {busy} blocking call(s) still running after the deadline")
            self._executor.shutdown(wait=False, cancel_futures=True)
        else:
            self._executor.shutdown(wait=True, cancel_futures=True)
        return busy


_current_pool: ContextVar[Optional[BlockingPool]] = ContextVar("blocking_pool", default=None)


def use_pool(pool: Optional[BlockingPool]):
    """Make ``pool`` serve ``run_blocking`` in the current context. Returns a reset token."""
    return _current_pool.set(pool)


def reset_pool(token) -> None:
    _current_pool.reset(token)


async def run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    """Run ``func(*args)`` on a worker thread of the current run."""
    pool = _current_pool.get()
    if pool is None:
        return await asyncio.to_thread(func, *args)
    return await pool.run(func, *args)


def abandoned_threads() -> List[threading.Thread]:
    """Worker threads of a run pool that are still alive."""
    return [
        thread
        for thread in threading.enumerate()
        if thread.name.startswith(THREAD_PREFIX) and thread.is_alive()
    ]
