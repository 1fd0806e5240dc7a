"""Per-API outbound rate limits (aiolimiter token buckets).

One limiter per external API, shared by every request in the process. Rates
come from settings, in requests per second.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from aiolimiter import AsyncLimiter

from persona.core.config import settings
from persona.core.metrics import rate_limiter_throttled_total

T = TypeVar("T")

_THROTTLE_THRESHOLD_SECONDS = 0.01

_limiters: dict[str, AsyncLimiter] = {
    "exa": AsyncLimiter(settings.EXA_RATE_LIMIT, 1.0),
    "mem0": AsyncLimiter(settings.MEM0_RATE_LIMIT, 1.0),
}


def limiter_for(api_name: str) -> AsyncLimiter:
    try:
        return _limiters[api_name]
    except KeyError:
        raise ValueError(f"No rate limiter configured for {api_name!r}") from None


async def rate_limited_call(
    api_name: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
) -> T:
    """Await ``func`` once ``api_name``'s bucket has a token.

    Waits longer than 10ms are counted as throttled.
    """
    waited_from = time.monotonic()
    async with limiter_for(api_name):
        if time.monotonic() - waited_from > _THROTTLE_THRESHOLD_SECONDS:
            rate_limiter_throttled_total.labels(api_name=api_name).inc()
        return await func(*args, **kwargs)
