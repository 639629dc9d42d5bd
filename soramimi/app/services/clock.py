"""Monotonic time and cancelable timers for the trigger scheduler.

``AsyncioClock`` runs timers on an asyncio loop; ``ManualClock`` keeps virtual
time that only moves when :meth:`ManualClock.advance` is called, which makes
scheduler behaviour reproducible in simulations and tests.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class CancelHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Clock(Protocol):
    def now_ms(self) -> float: ...

    def after(self, delay_ms: float, fn: Callable[[], None]) -> CancelHandle: ...

    def repeat(self, period_ms: float, fn: Callable[[], None]) -> CancelHandle: ...


class _AsyncioTimer:
    """Cancelable one-shot or repeating timer built on ``loop.call_later``."""

    def __init__(self, loop: asyncio.AbstractEventLoop, delay_ms: float, fn: Callable[[], None], repeat: bool) -> None:
        self._loop = loop
        self._delay_s = delay_ms / 1000.0
        self._fn = fn
        self._repeat = repeat
        self._cancelled = False
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(self._delay_s, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        if self._repeat:
            self._handle = self._loop.call_later(self._delay_s, self._fire)
        else:
            self._handle = None
        try:
            self._fn()
        except Exception as e:
            logger.error(f"Timer callback {getattr(self._fn, '__name__', self._fn)} failed: {e}", exc_info=True)

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioClock:
    """Clock backed by ``time.monotonic`` and the given (or running) event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def after(self, delay_ms: float, fn: Callable[[], None]) -> _AsyncioTimer:
        return _AsyncioTimer(self.loop, delay_ms, fn, repeat=False)

    def repeat(self, period_ms: float, fn: Callable[[], None]) -> _AsyncioTimer:
        if period_ms <= 0:
            raise ValueError(f"Repeat period must be positive, got {period_ms}")
        return _AsyncioTimer(self.loop, period_ms, fn, repeat=True)


class _ManualTimer:
    def __init__(self, clock: "ManualClock", period_ms: Optional[float], fn: Callable[[], None]) -> None:
        self.clock = clock
        self.period_ms = period_ms
        self.fn = fn
        self._cancelled = False

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.clock._discard(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock:
    """Virtual clock: timers fire only inside :meth:`advance`, in due-time order."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._queue: List[Tuple[float, int, _ManualTimer]] = []
        self._counter = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def _schedule(self, timer: _ManualTimer, delay_ms: float) -> None:
        heapq.heappush(self._queue, (self._now + delay_ms, next(self._counter), timer))

    def _discard(self, timer: _ManualTimer) -> None:
        self._queue = [entry for entry in self._queue if entry[2] is not timer]
        heapq.heapify(self._queue)

    def after(self, delay_ms: float, fn: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self, None, fn)
        self._schedule(timer, delay_ms)
        return timer

    def repeat(self, period_ms: float, fn: Callable[[], None]) -> _ManualTimer:
        if period_ms <= 0:
            raise ValueError(f"Repeat period must be positive, got {period_ms}")
        timer = _ManualTimer(self, period_ms, fn)
        self._schedule(timer, period_ms)
        return timer

    def pending(self) -> int:
        """Number of live timers; cancelled timers are removed from the queue."""
        return len(self._queue)

    def advance(self, ms: float) -> int:
        """Move time forward by ``ms``, firing every timer that falls due.

        Returns:
            Number of callbacks fired.
        """
        target = self._now + ms
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = due
            if timer.period_ms is not None:
                self._schedule(timer, timer.period_ms)
            timer.fn()
            fired += 1
        self._now = target
        return fired
