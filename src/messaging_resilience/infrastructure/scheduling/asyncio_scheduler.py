"""
Asyncio Clock and Scheduler

Production implementations of the Clock / Scheduler collaborators on top of
the running asyncio event loop.

- SystemClock: wall-clock time, asyncio.sleep for simulated latency
- AsyncioScheduler: every()/after() backed by one asyncio.Task per timer

A cancelled timer never fires again. Cancelling a timer whose callback is
currently running lets that callback finish; only future ticks are dropped.
"""

import asyncio
import time

from messaging_resilience.core.exceptions import SchedulerError
from messaging_resilience.core.interfaces.scheduling import Clock, Scheduler, TimerCallback
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.infrastructure.scheduling.callbacks import run_callback

logger = get_logger(__name__)


class SystemClock(Clock):
    """Wall-clock time in epoch milliseconds."""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000.0)


class AsyncioScheduledTask:
    """Handle for a timer running as an asyncio.Task."""

    def __init__(self, name: str, one_shot: bool):
        self._name = name
        self._one_shot = one_shot
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._running = False
        self._fired = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        if self._cancelled or (self._one_shot and self._fired):
            return True
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._running and not self._task.done():
            self._task.cancel()

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by the running event loop.

    Must be used from inside a running loop (every()/after() create tasks).
    """

    def every(self, interval_ms: float, fn: TimerCallback, *, name: str = "") -> AsyncioScheduledTask:
        if interval_ms <= 0:
            raise SchedulerError(
                f"Interval must be positive, got {interval_ms}",
                details={"task": name, "interval_ms": interval_ms},
            )
        handle = AsyncioScheduledTask(name, one_shot=False)
        handle._attach(asyncio.get_running_loop().create_task(self._run_every(handle, interval_ms, fn)))
        logger.debug("Repeating timer scheduled", stage="SCHED.1", task=name, interval_ms=interval_ms)
        return handle

    def after(self, delay_ms: float, fn: TimerCallback, *, name: str = "") -> AsyncioScheduledTask:
        handle = AsyncioScheduledTask(name, one_shot=True)
        handle._attach(asyncio.get_running_loop().create_task(self._run_after(handle, max(0.0, delay_ms), fn)))
        return handle

    async def _run_every(self, handle: AsyncioScheduledTask, interval_ms: float, fn: TimerCallback) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval_ms / 1000.0)
            if handle.cancelled:
                return
            handle._running = True
            try:
                await run_callback(fn, handle.name)
            finally:
                handle._running = False

    async def _run_after(self, handle: AsyncioScheduledTask, delay_ms: float, fn: TimerCallback) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        if handle.cancelled:
            return
        handle._running = True
        handle._fired = True
        try:
            await run_callback(fn, handle.name)
        finally:
            handle._running = False
