"""
Timer callback invocation shared by the scheduler implementations.
"""

import inspect

from messaging_resilience.core.interfaces.scheduling import TimerCallback
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


async def run_callback(fn: TimerCallback, name: str) -> None:
    """
    Invoke a timer callback, awaiting it if it is a coroutine.

    Exceptions are logged and counted, never propagated: a failing tick must
    not stop the ticks after it.
    """
    try:
        result = fn()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(
            f"Scheduled callback '{name}' raised: {e}",
            stage="SCHED.ERR",
            task=name,
            exc_info=True,
        )
        get_metrics_collector().record_scheduler_error(name)
