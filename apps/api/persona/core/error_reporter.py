"""Error tracking collaborator.

The engine reports hard failures (stream errors, unexpected retrieval or
persistence errors) through ``ErrorReporter``. The default implementation
writes a structured error log line with the traceback and the supplied
context, which the log pipeline forwards to whatever tracker is attached.
"""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class ErrorReporter(Protocol):
    def report(self, error: BaseException, context: dict[str, Any] | None = None) -> None: ...


class StructlogErrorReporter:
    """Reports errors as ``error_reporter.error`` log events."""

    def report(self, error: BaseException, context: dict[str, Any] | None = None) -> None:
        logger.error(
            "error_reporter.error",
            error_type=type(error).__name__,
            error=str(error),
            exc_info=(type(error), error, error.__traceback__),
            **(context or {}),
        )


class RecordingErrorReporter:
    """Keeps reported errors in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.reports: list[tuple[BaseException, dict[str, Any]]] = []

    def report(self, error: BaseException, context: dict[str, Any] | None = None) -> None:
        self.reports.append((error, dict(context or {})))
