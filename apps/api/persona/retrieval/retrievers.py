"""Knowledge source retrievers and their adapters to ``RetrievalResult``.

Every retriever wraps one external source. ``SourceRetriever.retrieve`` puts
the source call under a timeout and absorbs every failure: a source that
errors or does not answer in time contributes an empty list, and the rest of
the retrieval carries on without it.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Protocol

import structlog

from persona.core.config import settings
from persona.core.metrics import retrieval_source_calls_total
from persona.models.schemas import (
    SOURCE_CONTENT,
    SOURCE_MEMORY,
    SOURCE_WEB,
    ContentSearchResult,
    MemorySearchResult,
    QueryAnalysis,
    RetrievalRequest,
    RetrievalResult,
)
from persona.retrieval.web_search import WebSearchService
from persona.tools.content_store import social_link

logger = structlog.get_logger(__name__)

_PRIVATE_METADATA_KEYS = frozenset({"appId", "app_id", "userId", "user_id", "id"})


class MemoryStore(Protocol):
    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[MemorySearchResult]: ...


class ContentStore(Protocol):
    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[ContentSearchResult]: ...


def sanitize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Drop owner and internal identifiers before metadata leaves the service."""
    if not metadata:
        return {}
    return {k: v for k, v in metadata.items() if k not in _PRIVATE_METADATA_KEYS}


def memory_to_retrieval_result(memory: MemorySearchResult) -> RetrievalResult:
    metadata = sanitize_metadata(memory.metadata)
    metadata.setdefault("origin", memory.source)
    external_id = memory.metadata.get("externalId") or memory.metadata.get("external_id")
    if "link" not in metadata:
        link = social_link(memory.metadata.get("source"), external_id)
        if link:
            metadata["link"] = link
    return RetrievalResult(
        id=str(memory.id),
        content=memory.memory,
        relevance_score=memory.relevance_score,
        source=SOURCE_MEMORY,
        type="memory",
        created_at=memory.created_at,
        metadata=metadata,
    )


def content_to_retrieval_result(content: ContentSearchResult) -> RetrievalResult:
    metadata = sanitize_metadata(content.metadata)
    metadata["platform"] = content.source
    if content.link:
        metadata["link"] = content.link
    return RetrievalResult(
        id=str(content.id),
        content=content.content,
        relevance_score=content.relevance_score,
        source=SOURCE_CONTENT,
        type=content.type or "post",
        created_at=content.created_at,
        metadata=metadata,
    )


def web_to_retrieval_result(result: dict, rank: int = 0) -> RetrievalResult:
    """Adapt a web search hit; the URL is its identity.

    Hits without a usable provider score are ranked by position.
    """
    score = result.get("score")
    if not isinstance(score, int | float) or score <= 0:
        score = max(0.3, 0.9 - 0.05 * rank)
    title = result.get("title") or ""
    body = result.get("content") or ""
    return RetrievalResult(
        id=str(result.get("url", "")),
        content=f"{title}\n{body}".strip() if title else body,
        relevance_score=score,
        source=SOURCE_WEB,
        type="web_page",
        metadata={
            "title": title,
            "link": result.get("url", ""),
            "publishedDate": result.get("published_date"),
            "provider": result.get("source"),
        },
    )


def adapt_result(
    item: RetrievalResult | MemorySearchResult | ContentSearchResult,
) -> RetrievalResult:
    if isinstance(item, RetrievalResult):
        return item
    if isinstance(item, MemorySearchResult):
        return memory_to_retrieval_result(item)
    if isinstance(item, ContentSearchResult):
        return content_to_retrieval_result(item)
    raise TypeError(f"Cannot adapt {type(item).__name__} to RetrievalResult")


def _matches_source_filter(platform: object, source_filter: list[str]) -> bool:
    if not source_filter or not platform:
        return True
    return str(platform).lower() in source_filter


class SourceRetriever(ABC):
    """Base class: timeout, failure isolation, metrics and logging."""

    name: str = "source"

    def __init__(self, timeout: float | None = None):
        self._timeout = timeout if timeout is not None else settings.SOURCE_TIMEOUT

    async def retrieve(
        self, request: RetrievalRequest, analysis: QueryAnalysis
    ) -> list[RetrievalResult]:
        start = time.perf_counter()
        try:
            results = await asyncio.wait_for(
                self._search(request, analysis), timeout=self._timeout
            )
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            retrieval_source_calls_total.labels(source=self.name, status="timeout").inc()
            logger.warning(
                "retrieval.source_timeout",
                source=self.name,
                timeout=self._timeout,
                query_preview=request.query[:80],
            )
            return []
        except Exception as exc:
            retrieval_source_calls_total.labels(source=self.name, status="error").inc()
            logger.warning(
                "retrieval.source_failed",
                source=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
                query_preview=request.query[:80],
            )
            return []

        results = results[: request.max_results]
        retrieval_source_calls_total.labels(
            source=self.name, status="success" if results else "empty"
        ).inc()
        logger.info(
            "retrieval.source_complete",
            source=self.name,
            result_count=len(results),
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return results

    @abstractmethod
    async def _search(
        self, request: RetrievalRequest, analysis: QueryAnalysis
    ) -> list[RetrievalResult]: ...


class MemoryRetriever(SourceRetriever):
    name = SOURCE_MEMORY

    def __init__(
        self,
        store: MemoryStore,
        min_score: float | None = None,
        timeout: float | None = None,
    ):
        super().__init__(timeout)
        self._store = store
        self._min_score = settings.MEMORY_MIN_SCORE if min_score is None else min_score

    async def _search(
        self, request: RetrievalRequest, analysis: QueryAnalysis
    ) -> list[RetrievalResult]:
        memories = await self._store.search(request.query, request.user_id, request.app_id)
        kept = [
            m
            for m in memories
            if m.relevance_score > self._min_score
            and m.memory.strip()
            and _matches_source_filter(m.metadata.get("source"), analysis.source_filter)
        ]
        kept.sort(key=lambda m: m.relevance_score, reverse=True)
        return [memory_to_retrieval_result(m) for m in kept[: request.max_results]]


class ContentRetriever(SourceRetriever):
    name = SOURCE_CONTENT

    def __init__(self, store: ContentStore, timeout: float | None = None):
        super().__init__(timeout)
        self._store = store

    async def _search(
        self, request: RetrievalRequest, analysis: QueryAnalysis
    ) -> list[RetrievalResult]:
        contents = await self._store.search(request.query, request.user_id, request.app_id)
        kept = [
            c
            for c in contents
            if c.content.strip() and _matches_source_filter(c.source, analysis.source_filter)
        ]
        kept.sort(key=lambda c: c.relevance_score, reverse=True)
        return [content_to_retrieval_result(c) for c in kept[: request.max_results]]


class WebSearchRetriever(SourceRetriever):
    name = SOURCE_WEB

    def __init__(self, web_search: WebSearchService, timeout: float | None = None):
        super().__init__(timeout if timeout is not None else settings.WEB_SEARCH_TIMEOUT)
        self._web_search = web_search

    async def _search(
        self, request: RetrievalRequest, analysis: QueryAnalysis
    ) -> list[RetrievalResult]:
        outcome = await self._web_search.search(
            request.conversation_id, request.query, request.max_results
        )
        return [
            web_to_retrieval_result(result, rank)
            for rank, result in enumerate(outcome.results)
            if result.get("url")
        ]
