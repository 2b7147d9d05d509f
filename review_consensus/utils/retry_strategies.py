"""
Retry strategies for contended engine calls.

Only :class:`ContentionError` is retried; every other error surfaces on the
first attempt.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from review_consensus.errors import ContentionError
from review_consensus.models import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_CONFIG = RetryConfig()


def _retry_kwargs(config: RetryConfig) -> dict:
    return {
        "stop": stop_after_attempt(config.max_attempts),
        "wait": wait_exponential(
            multiplier=config.initial_delay,
            min=config.initial_delay,
            max=config.max_delay,
        )
        + wait_random(0, config.initial_delay),
        "retry": retry_if_exception_type(ContentionError),
        "before_sleep": before_sleep_log(logger, logging.WARNING),
        "reraise": True,
    }


def create_contention_retry_decorator(config: Optional[RetryConfig] = None):
    """
    Create a tenacity decorator that retries coroutines raising ContentionError.

    Args:
        config: Retry configuration (uses defaults if None)

    Returns:
        Retry decorator
    """
    return retry(**_retry_kwargs(config or DEFAULT_RETRY_CONFIG))


async def call_with_contention_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> T:
    """Await ``func(*args, **kwargs)``, retrying a bounded number of times on contention."""
    async for attempt in AsyncRetrying(**_retry_kwargs(config or DEFAULT_RETRY_CONFIG)):
        with attempt:
            return await func(*args, **kwargs)
    raise RuntimeError("unreachable: AsyncRetrying reraises on exhaustion")
