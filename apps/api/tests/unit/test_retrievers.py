"""Unit tests for source retrievers and their result adapters."""

import asyncio

import pytest

from persona.models.schemas import RetrievalRequest
from persona.retrieval.query_analyzer import QueryAnalyzer, default_analysis
from persona.retrieval.retrievers import (
    ContentRetriever,
    MemoryRetriever,
    WebSearchRetriever,
    sanitize_metadata,
    web_to_retrieval_result,
)
from persona.retrieval.web_search import WebSearchService


def _request(query: str = "remote work", max_results: int = 10) -> RetrievalRequest:
    return RetrievalRequest(
        query=query, user_id="owner-1", conversation_id="conv-1", max_results=max_results
    )


@pytest.mark.asyncio
async def test_memory_retriever_filters_low_scores(fakes) -> None:
    """Memories at or below the score floor and blank memories are dropped."""
    store = fakes.FakeMemoryStore(
        [
            fakes.memory("m1", "Async teams ship faster", 0.9),
            fakes.memory("m2", "Offices are overrated", 0.4),
            fakes.memory("m3", "   ", 0.95),
        ]
    )

    results = await MemoryRetriever(store, min_score=0.4).retrieve(_request(), default_analysis())

    assert [r.id for r in results] == ["m1"]
    assert results[0].source == "memory"


@pytest.mark.asyncio
async def test_memory_retriever_honours_platform_filter(fakes) -> None:
    """A platform named in the query keeps only memories from that platform."""
    store = fakes.FakeMemoryStore(
        [
            fakes.memory("m1", "Posted about remote work", 0.9, source="linkedin"),
            fakes.memory("m2", "Tweeted about remote work", 0.9, source="twitter"),
        ]
    )
    analysis = QueryAnalyzer().analyze("What did you say about remote work on LinkedIn?")

    results = await MemoryRetriever(store).retrieve(_request(), analysis)

    assert [r.id for r in results] == ["m1"]


@pytest.mark.asyncio
async def test_failing_source_contributes_nothing(fakes) -> None:
    """A store that raises yields an empty list instead of an error."""
    store = fakes.FakeMemoryStore(error=RuntimeError("mem0 down"))

    results = await MemoryRetriever(store).retrieve(_request(), default_analysis())

    assert results == []


@pytest.mark.asyncio
async def test_slow_source_times_out_to_empty() -> None:
    """A store slower than the timeout yields an empty list."""

    class SlowStore:
        async def search(self, query, user_id, app_id=None):
            await asyncio.sleep(1)
            return []

    results = await MemoryRetriever(SlowStore(), timeout=0.01).retrieve(
        _request(), default_analysis()
    )

    assert results == []


@pytest.mark.asyncio
async def test_content_retriever_truncates_to_max_results(fakes) -> None:
    """Content results come back sorted by score and capped at max_results."""
    store = fakes.FakeContentStore(
        [fakes.content(i, f"post {i}", score=i / 10) for i in range(1, 6)]
    )

    results = await ContentRetriever(store).retrieve(_request(max_results=2), default_analysis())

    assert [r.id for r in results] == ["5", "4"]
    assert results[0].metadata["platform"] == "linkedin"
    assert results[0].metadata["link"] == "https://example.com/posts/5"


@pytest.mark.asyncio
async def test_web_retriever_uses_conversation_cache(fakes, memory_cache) -> None:
    """The web retriever goes through the cached web search service."""
    client = fakes.FakeWebClient(
        [{"title": "Remote work study", "url": "https://example.com/study", "content": "..."}]
    )
    retriever = WebSearchRetriever(WebSearchService(client, memory_cache, timeout=1.0))

    first = await retriever.retrieve(_request(), default_analysis())
    second = await retriever.retrieve(_request(), default_analysis())

    assert [r.id for r in first] == ["https://example.com/study"]
    assert [r.id for r in second] == ["https://example.com/study"]
    assert client.queries == ["remote work"]


def test_web_result_without_score_is_ranked_by_position() -> None:
    """Missing provider scores fall back to a position-based score."""
    first = web_to_retrieval_result({"url": "https://a.example", "title": "A"}, rank=0)
    late = web_to_retrieval_result({"url": "https://b.example", "title": "B"}, rank=20)

    assert first.relevance_score == pytest.approx(0.9)
    assert late.relevance_score == pytest.approx(0.3)
    assert first.source == "web"
    assert first.type == "web_page"


def test_sanitize_metadata_drops_identifiers() -> None:
    """Owner and internal identifiers never leave the service."""
    cleaned = sanitize_metadata(
        {"appId": "a", "userId": "u", "id": "x", "user_id": "u", "source": "reddit"}
    )

    assert cleaned == {"source": "reddit"}
