"""
Command serializer.

db-lib handles are not reentrant. Each connection owns one CommandSerializer,
and every operation that touches the handle is submitted to it as a unit of
work. Units run one at a time, in submission order, on a single dedicated
worker thread, so the blocking native calls never stall the event loop.
"""

import asyncio
import concurrent.futures
import functools
import threading
from typing import Any, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class CommandSerializer:
    """Strict FIFO, single-flight executor for one connection handle.

    An ``asyncio.Lock`` (which wakes waiters in FIFO order) keeps callers in
    line; a one-worker thread pool runs the unit itself. If an awaiting caller
    is cancelled, its unit still finishes on the worker before the next unit
    starts, because the pool has exactly one thread.
    """

    def __init__(self, name: str = "tdsclient"):
        self._name = name
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop = None
        self._turn_guard = threading.Lock()
        self._in_turn = False

    @property
    def in_turn(self) -> bool:
        """True while a unit of work is running on the worker thread."""
        return self._in_turn

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _get_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=self._name,
            )
        return self._executor

    def _run_turn(self, fn: Callable[[], T]) -> T:
        if not self._turn_guard.acquire(blocking=False):
            raise RuntimeError("Connection handle entered from two units of work at once")
        self._in_turn = True
        try:
            return fn()
        finally:
            self._in_turn = False
            self._turn_guard.release()

    async def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Queue ``fn(*args, **kwargs)`` and wait for its result.

        Exceptions raised by ``fn`` propagate to this caller only.
        """
        call = functools.partial(fn, *args, **kwargs)
        async with self._get_lock():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._get_executor(), self._run_turn, call)

    async def shutdown(self) -> None:
        """Release the worker thread once every queued unit has run."""
        async with self._get_lock():
            executor, self._executor = self._executor, None
            if executor is not None:
                executor.shutdown(wait=False)
                logger.debug("Serializer worker released", name=self._name)
