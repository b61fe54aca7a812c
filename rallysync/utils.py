"""Utility functions for rallysync."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import math
import sys
import time
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, TypeVar

_T = TypeVar("_T")

logger = logging.getLogger(__name__)

# Check if eager_start is supported (Python 3.12+)
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12) and "eager_start" in inspect.signature(
    asyncio.create_task
).parameters


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    name: str | None = None,
    eager_start: bool = True,
) -> asyncio.Task[_T]:
    """Create an asyncio task with eager_start=True by default.

    Note: eager_start is only supported in Python 3.12+. On older versions,
    this parameter is ignored and tasks behave normally.

    Args:
        coro: The coroutine to run as a task.
        loop: Optional event loop to use. If None, uses the running loop.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly (default: True).

    Returns:
        The created asyncio Task.
    """
    kwargs: dict[str, Any] = {"name": name} if name is not None else {}

    if _SUPPORTS_EAGER_START:
        kwargs["eager_start"] = eager_start

    if loop is not None:
        return loop.create_task(coro, **kwargs)
    return asyncio.create_task(coro, **kwargs)


class RepeatingTask:
    """Calls a function at a fixed interval on the running event loop.

    The callback runs on the loop thread, one invocation at a time, so
    state it mutates never races with other loop callbacks. Exceptions are
    logged and the schedule keeps going. Cancellation happens through stop(),
    which owners call on teardown.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], object],
        *,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> None:
        """Initialize the repeating task.

        Args:
            interval: Seconds between invocations.
            callback: Synchronous function to call.
            name: Optional task name used in logs.
            run_immediately: Call once right away instead of after the first interval.
        """
        self._interval = interval
        self._callback = callback
        self._name = name or getattr(callback, "__name__", "repeating-task")
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the task is scheduled."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start calling the callback. Calling start twice is a no-op."""
        if self.running:
            return
        self._task = create_task(self._run(), name=self._name, eager_start=False)

    async def stop(self) -> None:
        """Cancel the schedule and wait for the task to finish."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        if self._run_immediately:
            self._invoke()
        while True:
            await asyncio.sleep(self._interval)
            self._invoke()

    def _invoke(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.exception("Error in repeating task %s", self._name)


def wall_clock_ms() -> float:
    """Return the local wall clock in milliseconds since the epoch."""
    return time.time() * 1000.0


def is_finite_number(value: object) -> bool:
    """Return True for int/float values that are finite (bool excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def format_ms(ms: float) -> str:
    """Format a duration as MM:SS, rounding to whole seconds and clamping at zero."""
    # Half-seconds round up, not to even
    total_sec = max(0, math.floor(ms / 1000 + 0.5))
    minutes, seconds = divmod(total_sec, 60)
    return f"{minutes:02d}:{seconds:02d}"


def format_time_of_day(ts_ms: float) -> str:
    """Format an epoch-millisecond instant as HH:MM:SS UTC."""
    when = datetime.fromtimestamp(ts_ms / 1000.0, tz=UTC)
    return f"{when:%H:%M:%S} UTC"
