"""Fan a query out to every knowledge source and merge the answers.

``RetrievalOrchestrator.retrieve`` never raises. Pipeline:

    analyze -> split max_results by source weight -> gather retrievers
            -> temporal window filter -> recency boost (recent-events queries)
            -> merge

The temporal filter keeps memory and content results dated inside the window
the query names ("last week", "2023"). Web hits are live and pass through.
When no dated result falls inside the window the unfiltered sets are kept.

Queries that ask for private information the persona never published
(``uncertainty_test``) skip the sources entirely and come back empty, so the
model answers that it does not know instead of guessing from loose matches.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from persona.core.config import settings
from persona.core.error_reporter import ErrorReporter, StructlogErrorReporter
from persona.core.metrics import retrieval_confidence_total, retrieval_duration_seconds
from persona.models.schemas import (
    SOURCE_WEB,
    QueryIntent,
    RetrievalRequest,
    RetrievalResponse,
    RetrievalResult,
    TemporalConstraint,
)
from persona.retrieval.merger import ResultMerger
from persona.retrieval.query_analyzer import QueryAnalyzer, allocate_max_results
from persona.retrieval.retrievers import SourceRetriever

logger = structlog.get_logger(__name__)

_RECENT_WINDOW_DAYS = 7
_RECENT_BOOST = 1.5
_MONTH_WINDOW_DAYS = 30
_MONTH_BOOST = 1.2
_DATE_METADATA_KEYS = ("timestamp", "socialContentCreatedAt", "createdAt", "created_at")


def apply_recency_boost(
    results: list[RetrievalResult], now: datetime | None = None
) -> list[RetrievalResult]:
    """Scale scores of recent results: x1.5 within 7 days, x1.2 within 30, capped at 1.0."""
    now = now or datetime.now(UTC)
    boosted: list[RetrievalResult] = []
    for result in results:
        created_at = result.created_at
        if created_at is None:
            boosted.append(result)
            continue
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        age_days = (now - created_at).total_seconds() / 86400
        if age_days <= _RECENT_WINDOW_DAYS:
            factor = _RECENT_BOOST
        elif age_days <= _MONTH_WINDOW_DAYS:
            factor = _MONTH_BOOST
        else:
            boosted.append(result)
            continue
        boosted.append(
            result.model_copy(
                update={"relevance_score": min(1.0, result.relevance_score * factor)}
            )
        )
    return boosted



def temporal_window(
    constraint: TemporalConstraint, now: datetime
) -> tuple[datetime, datetime] | None:
    """Inclusive (start, end) for a relative period or a calendar year."""
    if constraint.days is not None:
        return now - timedelta(days=constraint.days), now
    if constraint.year is not None:
        start = datetime(constraint.year, 1, 1, tzinfo=UTC)
        return start, datetime(constraint.year + 1, 1, 1, tzinfo=UTC) - timedelta(microseconds=1)
    return None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def result_date(result: RetrievalResult) -> datetime | None:
    """Date of a result: metadata timestamps first, then ``created_at``."""
    for key in _DATE_METADATA_KEYS:
        parsed = _as_datetime(result.metadata.get(key))
        if parsed is not None:
            return parsed
    return _as_datetime(result.created_at)


def apply_temporal_filter(
    result_sets: list[list[RetrievalResult]],
    constraint: TemporalConstraint | None,
    now: datetime,
) -> list[list[RetrievalResult]]:
    """Drop stored results dated outside the constraint's window.

    Undated stored results are dropped too. Web results are kept. If no stored
    result survives, the sets come back unchanged.
    """
    window = temporal_window(constraint, now) if constraint else None
    if window is None:
        return result_sets
    start, end = window

    def in_window(result: RetrievalResult) -> bool:
        if result.source == SOURCE_WEB:
            return True
        when = result_date(result)
        return when is not None and start <= when <= end

    filtered = [[r for r in results if in_window(r)] for results in result_sets]
    stored_before = sum(1 for rs in result_sets for r in rs if r.source != SOURCE_WEB)
    stored_after = sum(1 for rs in filtered for r in rs if r.source != SOURCE_WEB)
    if stored_before and not stored_after:
        logger.info(
            "retrieval.temporal_fallback", period=constraint.label, candidates=stored_before
        )
        return result_sets
    logger.debug(
        "retrieval.temporal_filter", period=constraint.label, kept=stored_after, of=stored_before
    )
    return filtered

class RetrievalOrchestrator:
    def __init__(
        self,
        retrievers: Sequence[SourceRetriever],
        analyzer: QueryAnalyzer | None = None,
        merger: ResultMerger | None = None,
        error_reporter: ErrorReporter | None = None,
        result_cap: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._retrievers = list(retrievers)
        self._analyzer = analyzer or QueryAnalyzer()
        self._merger = merger or ResultMerger()
        self._error_reporter = error_reporter or StructlogErrorReporter()
        self._result_cap = result_cap if result_cap is not None else settings.RETRIEVAL_RESULT_CAP
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def source_names(self) -> list[str]:
        return [r.name for r in self._retrievers]

    async def retrieve(self, request: RetrievalRequest) -> RetrievalResponse:
        started_at = time.perf_counter()
        try:
            response = await self._retrieve(request, started_at)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("retrieval.unexpected_error", query_preview=request.query[:80])
            self._error_reporter.report(
                exc, {"component": "retrieval", "user_id": request.user_id}
            )
            response = RetrievalResponse(query=request.query)

        retrieval_duration_seconds.observe(time.perf_counter() - started_at)
        retrieval_confidence_total.labels(level=response.confidence_level).inc()
        logger.info(
            "retrieval.complete",
            query_preview=request.query[:80],
            total_results=response.total_results,
            confidence=response.confidence_level,
            sources_used=response.sources_used,
            processing_ms=response.processing_time,
        )
        return response

    async def _retrieve(self, request: RetrievalRequest, started_at: float) -> RetrievalResponse:
        analysis = self._analyzer.analyze(request.query)

        if analysis.requires_private_info:
            logger.info(
                "retrieval.private_info_query",
                query_preview=request.query[:80],
                intent=analysis.primary_intent.value,
            )
            return self._merger.merge(
                [], query=request.query, started_at=started_at, analysis=analysis
            )

        retrievers = self._select(request)
        weights = request.weights or analysis.source_weights
        max_results = min(request.max_results, self._result_cap)
        allocation = allocate_max_results(max_results, weights, [r.name for r in retrievers])

        result_sets = await asyncio.gather(
            *(
                retriever.retrieve(
                    request.model_copy(update={"max_results": allocation[retriever.name]}),
                    analysis,
                )
                for retriever in retrievers
            )
        )

        now = self._clock()
        result_sets = apply_temporal_filter(list(result_sets), analysis.temporal, now)
        if analysis.primary_intent == QueryIntent.RECENT_EVENTS:
            result_sets = [apply_recency_boost(results, now) for results in result_sets]

        logger.debug(
            "retrieval.fan_in",
            allocation=allocation,
            counts={r.name: len(rs) for r, rs in zip(retrievers, result_sets, strict=True)},
        )
        return self._merger.merge(
            result_sets,
            query=request.query,
            max_results=max_results,
            started_at=started_at,
            analysis=analysis,
        )

    def _select(self, request: RetrievalRequest) -> list[SourceRetriever]:
        if request.sources is None:
            return self._retrievers
        wanted = set(request.sources)
        return [r for r in self._retrievers if r.name in wanted]
