"""
talos_provisioner/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with an optional exponential growth of the delay between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. The first
    pause is `delay` seconds and each following pause is multiplied by
    `backoff`, capped at `max_delay`. Only exceptions matching `retry_on` are
    retried; anything else propagates at once, as does cancellation.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds before the second attempt. Defaults to 1.0.
        backoff (float, optional):
            Multiplier applied to the delay after each failure. Defaults to 1.0.
        max_delay (float, optional):
            Upper bound for any single delay. Defaults to 60.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Defaults to (Exception,).
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on the selected exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int, pause: float) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(pause)
                        return await attempt(
                            remaining - 1,
                            attempt_number + 1,
                            min(pause * backoff, max_delay),
                        )

                    if noisy:
                        logger.error(
                            "All %d attempts failed for %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1, min(delay, max_delay))

        return wrapper

    return decorator
