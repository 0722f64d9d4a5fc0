"""Concurrency gate in front of every external command."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_IN_FLIGHT = 40


class CommandGate:
    """
    Bounded worker pool for blocking external calls (git subprocesses, S3 requests).

    Admission is FIFO (the executor's work queue), at most ``max_in_flight``
    callables run at once, and a slot is released as soon as its callable
    returns or raises. Callers on the event loop suspend in ``run`` until
    their callable has finished.
    """

    def __init__(self, max_in_flight: int = DEFAULT_MAX_IN_FLIGHT) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._max_in_flight = max_in_flight
        self._pool = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix="cdndeploy-cmd")
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0
        self._closed = False

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    def _call(self, fn: Callable[..., T]) -> T:
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        try:
            return fn()
        finally:
            with self._lock:
                self._in_flight -= 1

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._closed:
            raise RuntimeError("CommandGate is closed")
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        return await loop.run_in_executor(self._pool, self._call, call)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=True)
        logger.debug("command gate closed (peak in flight: %d)", self._peak)

    def __enter__(self) -> "CommandGate":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
