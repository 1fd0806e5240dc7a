"""pybreaker guards around the Exa and Mem0 adapters.

A breaker opens after ``CIRCUIT_BREAKER_FAILURE_THRESHOLD`` consecutive
failures and lets one probe through after ``CIRCUIT_BREAKER_RECOVERY_TIMEOUT``
seconds. pybreaker cannot await, so the coroutine runs here and only its
outcome is replayed through ``breaker.call``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

from persona.core.config import settings
from persona.core.metrics import circuit_breaker_open_total, circuit_breaker_state_changes_total

logger = structlog.get_logger(__name__)

STATE_OPEN = "open"
STATE_HALF_OPEN = "half-open"


def _state_name(state: Any) -> str:
    return str(getattr(state, "name", state))


class LoggingCircuitBreakerListener(CircuitBreakerListener):
    def __init__(self, api_name: str):
        self.api_name = api_name
        self._log = logger.bind(api_name=api_name)

    def state_change(self, cb: CircuitBreaker, old_state: Any, new_state: Any) -> None:
        before, after = _state_name(old_state), _state_name(new_state)
        self._log.info("breaker.transition", before=before, after=after)
        circuit_breaker_state_changes_total.labels(
            api_name=self.api_name, from_state=before, to_state=after
        ).inc()
        if after == STATE_OPEN:
            circuit_breaker_open_total.labels(api_name=self.api_name).inc()

    def failure(self, cb: CircuitBreaker, exc: BaseException) -> None:
        self._log.warning("breaker.failure_recorded", consecutive=cb.fail_counter, error=str(exc))

    def success(self, cb: CircuitBreaker) -> None:
        if cb.current_state == STATE_HALF_OPEN:
            self._log.info("breaker.probe_succeeded")


def create_circuit_breaker(api_name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name=api_name,
        fail_max=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        reset_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
        listeners=[LoggingCircuitBreakerListener(api_name)],
    )


exa_breaker = create_circuit_breaker("exa")
mem0_breaker = create_circuit_breaker("mem0")


def _record_success() -> None:
    return None


def _record_failure(exc: BaseException) -> None:
    raise exc


def _admits(breaker: CircuitBreaker) -> bool:
    """False while the breaker is open and its reset timeout has not elapsed."""
    if breaker.current_state != STATE_OPEN:
        return True
    try:
        breaker.call(_record_success)
    except CircuitBreakerError:
        return False
    return True


async def call_with_circuit_breaker(
    breaker: CircuitBreaker,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    default: Any = None,
    **kwargs: Any,
) -> Any:
    """Await ``func`` if ``breaker`` admits it.

    A rejected or failed call yields ``default``, or an empty list when no
    default is given. Exceptions never escape.
    """
    fallback = [] if default is None else default

    if not _admits(breaker):
        logger.warning("breaker.rejected", api_name=breaker.name)
        return fallback

    try:
        result = await func(*args, **kwargs)
    except Exception as exc:
        try:
            breaker.call(_record_failure, exc)
        except CircuitBreakerError:
            logger.warning("breaker.opened_by_call", api_name=breaker.name, error=str(exc))
        except Exception:
            logger.error("breaker.call_failed", api_name=breaker.name, error=str(exc))
        return fallback

    try:
        breaker.call(_record_success)
    except CircuitBreakerError:
        # opened by a concurrent caller
        logger.debug("breaker.success_after_open", api_name=breaker.name)
    return result
