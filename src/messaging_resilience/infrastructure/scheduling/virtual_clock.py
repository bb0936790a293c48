"""
Virtual Clock

Deterministic Clock + Scheduler for tests and offline simulations. Time only
moves when advance() is called or when an engine sleeps.

Rules:
- sleep(ms) moves virtual time forward by ``ms`` without firing timers
- advance(ms) fires every timer due up to ``now + ms`` in (due time,
  registration order), awaiting coroutine callbacks one at a time
- a repeating timer is rescheduled before its callback runs, so a callback
  that cancels its own timer stops it for good
- timers registered by a callback fire in the same advance() if they fall
  inside the window
"""

import asyncio
import heapq
import itertools

from messaging_resilience.core.exceptions import SchedulerError
from messaging_resilience.core.interfaces.scheduling import Clock, Scheduler, TimerCallback
from messaging_resilience.infrastructure.scheduling.callbacks import run_callback

# 2024-01-01T00:00:00Z
DEFAULT_START_MS = 1_704_067_200_000.0


class VirtualTimer:
    """Scheduled task on virtual time."""

    def __init__(self, name: str, fn: TimerCallback, due_ms: float, interval_ms: float | None):
        self._name = name
        self.fn = fn
        self.due_ms = due_ms
        self.interval_ms = interval_ms
        self._cancelled = False
        self._fired = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._cancelled or (self.interval_ms is None and self._fired)

    def cancel(self) -> None:
        self._cancelled = True


class VirtualClock(Clock, Scheduler):
    """
    Clock and scheduler driven by explicit advance() calls.

    Usage:
        clock = VirtualClock()
        breaker = CircuitBreaker(clock=clock)
        await breaker.call("request-1")
        await clock.advance(15_000)
    """

    def __init__(self, start_ms: float = DEFAULT_START_MS):
        self._now = float(start_ms)
        self._heap: list[tuple[float, int, VirtualTimer]] = []
        self._seq = itertools.count()

    # =========================================================================
    # Clock
    # =========================================================================

    def now_ms(self) -> float:
        return self._now

    async def sleep(self, ms: float) -> None:
        self._now += max(0.0, ms)
        # Let other ready coroutines interleave, as a real sleep would
        await asyncio.sleep(0)

    # =========================================================================
    # Scheduler
    # =========================================================================

    def every(self, interval_ms: float, fn: TimerCallback, *, name: str = "") -> VirtualTimer:
        if interval_ms <= 0:
            raise SchedulerError(
                f"Interval must be positive, got {interval_ms}",
                details={"task": name, "interval_ms": interval_ms},
            )
        timer = VirtualTimer(name, fn, self._now + interval_ms, interval_ms)
        self._push(timer)
        return timer

    def after(self, delay_ms: float, fn: TimerCallback, *, name: str = "") -> VirtualTimer:
        timer = VirtualTimer(name, fn, self._now + max(0.0, delay_ms), None)
        self._push(timer)
        return timer

    # =========================================================================
    # Driving time
    # =========================================================================

    async def advance(self, ms: float) -> int:
        """
        Move virtual time forward by ``ms``, firing due timers in order.

        Returns:
            Number of callbacks fired
        """
        target = self._now + max(0.0, ms)
        fired = 0

        while self._heap and self._heap[0][0] <= target:
            _, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue

            self._now = max(self._now, timer.due_ms)
            if timer.interval_ms is not None:
                timer.due_ms += timer.interval_ms
                self._push(timer)
            else:
                timer._fired = True

            await run_callback(timer.fn, timer.name)
            fired += 1

        self._now = max(self._now, target)
        return fired

    async def run_pending(self) -> int:
        """Fire everything due at the current instant (e.g. after(0) deliveries)."""
        return await self.advance(0)

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, timer in self._heap if not timer.cancelled)

    def _push(self, timer: VirtualTimer) -> None:
        heapq.heappush(self._heap, (timer.due_ms, next(self._seq), timer))
