"""Merge per-source result lists into one ranked, confidence-classified response.

Merge rules:
1. flatten every result set, adapting source-specific results to
   ``RetrievalResult``;
2. deduplicate on ``(id, source)``: the highest relevance score wins, and on
   a tie the first-seen occurrence is kept;
3. stable sort by relevance score, descending, and cap to ``max_results``;
4. classify confidence from the top three scores;
5. ``sources_used`` lists each source with at least one surviving result,
   in order of first appearance in the final ranking.

``merge`` only computes its return value.
"""

import time
from collections.abc import Iterable, Sequence

from persona.models.schemas import (
    ConfidenceLevel,
    ContentSearchResult,
    MemorySearchResult,
    QueryAnalysis,
    RetrievalResponse,
    RetrievalResult,
)
from persona.retrieval.retrievers import adapt_result

HIGH_CONFIDENCE_MEAN = 0.8
MEDIUM_CONFIDENCE_MEAN = 0.5
HIGH_CONFIDENCE_MIN_COUNT = 3

MergeInput = RetrievalResult | MemorySearchResult | ContentSearchResult


def classify_confidence(results: Sequence[RetrievalResult]) -> ConfidenceLevel:
    """Classify a score-sorted result list by the mean of its top three scores."""
    if not results:
        return "none"
    top = [r.relevance_score for r in results[:3]]
    mean = sum(top) / len(top)
    if mean >= HIGH_CONFIDENCE_MEAN and len(results) >= HIGH_CONFIDENCE_MIN_COUNT:
        return "high"
    if mean >= MEDIUM_CONFIDENCE_MEAN:
        return "medium"
    return "low"


def deduplicate(results: Iterable[RetrievalResult]) -> list[RetrievalResult]:
    best: dict[tuple[str, str], RetrievalResult] = {}
    for result in results:
        current = best.get(result.identity)
        if current is None or result.relevance_score > current.relevance_score:
            best[result.identity] = result
    # dicts keep first-insertion order, so ties stay in first-seen position
    return list(best.values())


class ResultMerger:
    def merge(
        self,
        result_sets: Iterable[Iterable[MergeInput]],
        *,
        query: str = "",
        max_results: int = 20,
        started_at: float | None = None,
        analysis: QueryAnalysis | None = None,
    ) -> RetrievalResponse:
        flattened = [adapt_result(item) for results in result_sets for item in results]
        unique = deduplicate(flattened)
        ranked = sorted(unique, key=lambda r: r.relevance_score, reverse=True)
        ranked = ranked[: max(max_results, 0)]

        sources_used: list[str] = []
        for result in ranked:
            if result.source not in sources_used:
                sources_used.append(result.source)

        processing_time = (
            round((time.perf_counter() - started_at) * 1000, 2) if started_at is not None else 0.0
        )
        return RetrievalResponse(
            query=query,
            results=ranked,
            total_results=len(ranked),
            confidence_level=classify_confidence(ranked),
            sources_used=sources_used,
            processing_time=processing_time,
            query_analysis=analysis,
        )
