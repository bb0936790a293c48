"""
Clock and Scheduler Interfaces

Every engine reads time and schedules work exclusively through these two
collaborators so that the same engine code runs on the asyncio event loop
in production and on deterministic virtual time in tests.

Components:
-----------
- Clock: wall-clock reads in milliseconds + simulated latency (sleep)
- Scheduler: repeating (every) and delayed (after) callbacks
- ScheduledTask: cancelable handle returned by the scheduler
- TaskRegistry: per-engine arena of handles, cancelled together on stop()
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

TimerCallback = Callable[[], Awaitable[None] | None]


def to_iso(ms: float) -> str:
    """Render an epoch-millisecond instant as an ISO-8601 UTC string."""
    instant = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Clock(ABC):
    """Source of time for an engine."""

    @abstractmethod
    def now_ms(self) -> float:
        """Current epoch time in milliseconds."""

    @abstractmethod
    async def sleep(self, ms: float) -> None:
        """Suspend the caller for ``ms`` milliseconds (simulated latency)."""

    def now_iso(self) -> str:
        return to_iso(self.now_ms())


@runtime_checkable
class ScheduledTask(Protocol):
    """Cancelable handle for a scheduled callback."""

    @property
    def name(self) -> str:
        ...

    @property
    def cancelled(self) -> bool:
        ...

    @property
    def done(self) -> bool:
        """True once the task can never fire again (cancelled or one-shot fired)."""
        ...

    def cancel(self) -> None:
        ...


class Scheduler(ABC):
    """
    Timer collaborator.

    Callbacks may be plain functions or coroutine functions. An exception
    raised by a callback is logged by the scheduler and never stops later
    ticks of a repeating task.
    """

    @abstractmethod
    def every(self, interval_ms: float, fn: TimerCallback, *, name: str = "") -> ScheduledTask:
        """Run ``fn`` every ``interval_ms`` until cancelled (first run after one interval)."""

    @abstractmethod
    def after(self, delay_ms: float, fn: TimerCallback, *, name: str = "") -> ScheduledTask:
        """Run ``fn`` once after ``delay_ms``."""


class TaskRegistry:
    """
    Arena of scheduled-task handles owned by one engine.

    stop() on an engine calls cancel_all(), which cancels every handle the
    engine ever registered that can still fire. Cancellation does not wait
    for callbacks that are already running.
    """

    def __init__(self, owner: str):
        self._owner = owner
        self._tasks: list[ScheduledTask] = []

    def register(self, task: ScheduledTask) -> ScheduledTask:
        self._tasks = [t for t in self._tasks if not t.done]
        self._tasks.append(task)
        return task

    def cancel_all(self) -> int:
        """Cancel every live task. Returns the number of tasks cancelled."""
        live = [t for t in self._tasks if not t.done]
        for task in live:
            task.cancel()
        self._tasks = []
        return len(live)

    @property
    def active(self) -> int:
        return sum(1 for t in self._tasks if not t.done)

    def __len__(self) -> int:
        return self.active
