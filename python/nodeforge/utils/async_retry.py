"""
nodeforge/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure.

Only use it on calls that are safe to repeat (reads such as registry listing
or secret lookups). Provider create calls are never retried here, since a
retry after an ambiguous failure can create a duplicate server.
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
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function is attempted up to `retries` times, sleeping `delay`
    seconds between attempts. Exceptions not listed in `retry_on` propagate
    immediately. Arguments are never logged, as they may carry credentials.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger another attempt. Defaults to (Exception,).

    Returns:
        A decorator that wraps an async function with the retry loop.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            for attempt_number in range(1, retries + 1):
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
                    if attempt_number >= retries:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %r",
                                retries,
                                func.__qualname__,
                            )
                        raise
                    await asyncio.sleep(delay)
            raise RuntimeError(f"{func.__qualname__} called with retries={retries}")

        wrapper.__qualname__ = func.__qualname__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
