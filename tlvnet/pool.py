"""Pools of event loops running on background threads."""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import os
import threading
from typing import Any, Coroutine, List, Optional


def _default_size() -> int:
    return os.cpu_count() or 1


def _shutdown_loop(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    loop.run_until_complete(loop.shutdown_asyncgens())
    loop.run_until_complete(loop.shutdown_default_executor())
    loop.close()


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    try:
        loop.run_forever()
    finally:
        _shutdown_loop(loop)


class IOServicePool:
    """One event loop per thread, handed out round-robin."""

    def __init__(self, size: Optional[int] = None) -> None:
        size = _default_size() if size is None else size
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self._loops: List[asyncio.AbstractEventLoop] = [
            asyncio.new_event_loop() for _ in range(size)
        ]
        self._threads = [
            threading.Thread(
                target=_run_loop, args=(loop,), name=f"io-service-{index}", daemon=True
            )
            for index, loop in enumerate(self._loops)
        ]
        self._cursor = itertools.cycle(self._loops)
        self._lock = threading.Lock()
        self._stopped = False
        for thread in self._threads:
            thread.start()

    def get_loop(self) -> asyncio.AbstractEventLoop:
        """Return the next loop in round-robin order."""
        with self._lock:
            if self._stopped:
                raise RuntimeError("pool is stopped")
            return next(self._cursor)

    def stop(self) -> None:
        """Stop every loop and wait for its thread to finish."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        for loop in self._loops:
            loop.call_soon_threadsafe(loop.stop)
        for thread in self._threads:
            thread.join()

    def __len__(self) -> int:
        return len(self._loops)


class IOThreadPool:
    """A single shared event loop whose blocking work runs on ``size`` threads."""

    def __init__(self, size: Optional[int] = None) -> None:
        size = _default_size() if size is None else size
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self._loop = asyncio.new_event_loop()
        self._loop.set_default_executor(
            concurrent.futures.ThreadPoolExecutor(
                max_workers=size, thread_name_prefix="io-thread"
            )
        )
        self._thread = threading.Thread(
            target=_run_loop, args=(self._loop,), name="io-thread-loop", daemon=True
        )
        self._lock = threading.Lock()
        self._stopped = False
        self._thread.start()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def submit(self, coro: Coroutine[Any, Any, Any]) -> "concurrent.futures.Future[Any]":
        """Schedule ``coro`` on the shared loop and return its future."""
        with self._lock:
            if self._stopped:
                coro.close()
                raise RuntimeError("pool is stopped")
            return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def stop(self) -> None:
        """Stop the loop, cancel what is still pending and join the thread."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()