"""Reusable decorators for provider calls."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any

from vmfleet.exceptions import ProviderError, ProviderUnavailableError

F = Callable[..., Any]

logger = logging.getLogger(__name__)


def retry_transient(*, max_attempts: int = 3, backoff_base: float = 1.0) -> Callable[[F], F]:
    """Retry an async function on retryable provider errors with exponential backoff.

    Only :class:`ProviderError` subclasses flagged ``retryable`` are retried;
    everything else propagates on the first failure.

    Args:
        max_attempts: Maximum number of attempts.
        backoff_base: Base delay in seconds (doubles each retry).
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_attempts):
                try:
                    return await fn(*args, **kwargs)
                except ProviderError as e:
                    if not e.retryable or attempt == max_attempts - 1:
                        raise
                    delay = backoff_base * (2**attempt)
                    logger.debug(
                        "%s failed (%s), retrying in %.1fs",
                        fn.__qualname__,
                        type(e).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)
            msg = f"{fn.__qualname__} called with max_attempts={max_attempts}"
            raise ValueError(msg)

        return wrapper

    return decorator


def timeout(*, seconds: float) -> Callable[[F], F]:
    """Enforce a timeout on an async function.

    A timeout surfaces as :class:`ProviderUnavailableError`: the call may
    still complete on the provider side.

    Args:
        seconds: Maximum execution time in seconds.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=seconds)
            except TimeoutError as e:
                raise ProviderUnavailableError(
                    f"{fn.__qualname__} timed out after {seconds}s",
                    details={"timeout_seconds": seconds},
                ) from e

        return wrapper

    return decorator
