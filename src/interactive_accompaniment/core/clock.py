"""
Clocks and cancellable timers driving the engine.

The engine never sleeps or spawns threads; everything it defers goes
through a clock. ``AsyncioClock`` runs on a live event loop,
``ManualClock`` keeps virtual time for tests and offline simulation.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...

    def cancelled(self) -> bool:
        ...


@runtime_checkable
class Clock(Protocol):
    """Protocol for engine clocks."""

    def now_ms(self) -> float:
        """Current time in milliseconds."""
        ...

    def call_later(self, delay_s: float, callback: Callback) -> TimerHandle:
        """Run ``callback`` once after ``delay_s`` seconds."""
        ...

    def call_every(self, interval_s: float, callback: Callback) -> TimerHandle:
        """Run ``callback`` every ``interval_s`` seconds until cancelled."""
        ...


class _ManualTimer:
    def __init__(self, callback: Callback, interval_us: Optional[int]):
        self.callback = callback
        self.interval_us = interval_us
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock:
    """
    Deterministic virtual clock.

    Time only moves when :meth:`advance` is called; due timers fire in
    chronological order (ties in scheduling order). Time is kept in integer
    microseconds so repeated ticks do not drift.
    """

    def __init__(self, start_ms: float = 0.0):
        self._now_us = round(start_ms * 1000)
        self._queue: list[tuple[int, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now_us / 1000.0

    def call_later(self, delay_s: float, callback: Callback) -> _ManualTimer:
        timer = _ManualTimer(callback, None)
        self._push(self._now_us + max(0, round(delay_s * 1_000_000)), timer)
        return timer

    def call_every(self, interval_s: float, callback: Callback) -> _ManualTimer:
        interval_us = max(1, round(interval_s * 1_000_000))
        timer = _ManualTimer(callback, interval_us)
        self._push(self._now_us + interval_us, timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due."""
        target = self._now_us + round(seconds * 1_000_000)
        while self._queue and self._queue[0][0] <= target:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._now_us = due
            timer.callback()
            if timer.interval_us is not None and not timer.cancelled():
                self._push(due + timer.interval_us, timer)
        self._now_us = target

    def advance_ms(self, milliseconds: float) -> None:
        self.advance(milliseconds / 1000.0)

    @property
    def pending(self) -> int:
        """Number of live timers still queued."""
        return sum(1 for _, _, t in self._queue if not t.cancelled())

    def _push(self, due_us: int, timer: _ManualTimer) -> None:
        heapq.heappush(self._queue, (due_us, next(self._seq), timer))


class _RepeatingHandle:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval_s: float, callback: Callback):
        self._loop = loop
        self._interval = interval_s
        self._callback = callback
        self._cancelled = False
        self._next = loop.time() + interval_s
        self._handle = loop.call_at(self._next, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        finally:
            if not self._cancelled:
                # Schedule against the ideal grid to avoid drift
                self._next += self._interval
                self._handle = self._loop.call_at(self._next, self._run)

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioClock:
    """Clock bound to an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def now_ms(self) -> float:
        return self._loop.time() * 1000.0

    def call_later(self, delay_s: float, callback: Callback) -> asyncio.TimerHandle:
        return self._loop.call_later(max(0.0, delay_s), callback)

    def call_every(self, interval_s: float, callback: Callback) -> _RepeatingHandle:
        return _RepeatingHandle(self._loop, interval_s, callback)
