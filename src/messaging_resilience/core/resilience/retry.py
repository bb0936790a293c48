"""
Publish retry helper built on tenacity.

Transport outages are retried with exponential backoff. Backoff sleeps go
through the engine's Clock so the same helper runs on virtual time in tests.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from messaging_resilience.core.exceptions import TransportUnavailableError
from messaging_resilience.core.interfaces.scheduling import Clock

T = TypeVar("T")

PUBLISH_BASE_DELAY_S = 0.1
PUBLISH_MAX_DELAY_S = 2.0


def create_async_retrying(
    clock: Clock,
    max_attempts: int,
    base_delay: float = PUBLISH_BASE_DELAY_S,
    max_delay: float = PUBLISH_MAX_DELAY_S,
    retry_exceptions: tuple[type[BaseException], ...] = (TransportUnavailableError,),
) -> AsyncRetrying:
    std_logger = logging.getLogger(__name__)  # Tenacity needs std lib logger

    async def clock_sleep(seconds: float) -> None:
        await clock.sleep(seconds * 1000)

    return AsyncRetrying(
        sleep=clock_sleep,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(retry_exceptions),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )


async def publish_with_retry(
    clock: Clock,
    max_attempts: int,
    publish: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Run ``publish(*args, **kwargs)``, retrying on TransportUnavailableError.

    The last TransportUnavailableError is re-raised once attempts run out.
    """
    retrying = create_async_retrying(clock, max_attempts=max(1, max_attempts))
    return await retrying(publish, *args, **kwargs)
