"""Backoff retries for calls to external knowledge and search APIs.

``retry_with_backoff`` never raises for a failed call: it returns None once
attempts are used up, and the source adapters turn that into "no results".
Client errors (4xx other than 429) are not retried.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NON_RETRYABLE_STATUSES: frozenset[int] = frozenset({400, 401, 403, 404, 405, 410, 422})


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before the attempt after ``attempt`` (1-based): base * 2^(n-1), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    non_retryable_statuses: frozenset[int] = NON_RETRYABLE_STATUSES,
    **kwargs: Any,
) -> T | None:
    """Await ``func(*args, **kwargs)`` up to ``max_attempts`` times.

    Returns the first successful result, or None when every attempt failed
    or the failure was a non-retryable HTTP status.
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status_code = _status_of(exc)
            log = logger.bind(func=name, attempt=attempt, status_code=status_code, error=str(exc))

            if status_code in non_retryable_statuses:
                log.warning("retry.non_retryable_http_error")
                return None
            if attempt == max_attempts:
                log.error("retry.exhausted")
                return None

            delay = backoff_delay(attempt, base_delay, max_delay)
            log.warning("retry.attempt", max_attempts=max_attempts, delay_seconds=delay)
            await asyncio.sleep(delay)

    return None
