"""Unit tests for the model-callable tools and per-mode registries."""

import pytest

from persona.engine.builtin_tools import (
    DEEP_THINK_PROGRESS,
    PERSONA_MEMORY_SEARCH,
    RETRIEVE_CONTENT_FROM_URL,
    WEB_SEARCH,
    build_tool_registry,
    persona_memory_search_tool,
)
from persona.engine.progress import DeepThinkNotifier
from persona.engine.stream_writer import ListTransport, StreamWriter
from persona.engine.tools import ToolContext, ToolRegistry
from persona.retrieval.orchestrator import RetrievalOrchestrator
from persona.retrieval.retrievers import ContentRetriever, MemoryRetriever
from persona.retrieval.web_search import WebSearchService

HITS = [
    {"title": "Remote work report", "url": "https://example.com/report", "content": "data"},
    {"title": "No link", "url": "", "content": "dropped from references"},
]


def _context(*, deep: bool = True, owner: str | None = "owner-1"):
    transport = ListTransport()
    writer = StreamWriter(transport, conversation_id="conv-1").for_model("m")
    ctx = ToolContext(
        conversation_id="conv-1",
        user_id="user-1",
        app_id="app-1",
        model="m",
        writer=writer,
        progress=DeepThinkNotifier(writer, deep),
        memory_owner_id=owner,
    )
    return ctx, transport


def _web(fakes, memory_cache) -> WebSearchService:
    return WebSearchService(fakes.FakeWebClient(), memory_cache, timeout=1.0)


def _orchestrator(fakes, memories=(), contents=()):
    return RetrievalOrchestrator(
        [
            MemoryRetriever(fakes.FakeMemoryStore(list(memories))),
            ContentRetriever(fakes.FakeContentStore(list(contents))),
        ]
    )


def test_default_mode_registry(fakes, memory_cache) -> None:
    """Default mode offers web search and URL retrieval only."""
    web = _web(fakes, memory_cache)

    registry = build_tool_registry(
        deep_mode=False, web_search=web, orchestrator=_orchestrator(fakes), has_memory_owner=True
    )

    assert registry.names == [WEB_SEARCH, RETRIEVE_CONTENT_FROM_URL]


def test_deep_mode_registry_depends_on_memory_owner(fakes, memory_cache) -> None:
    """Personal memory search is only offered when the persona has an owner."""
    web = _web(fakes, memory_cache)

    with_owner = build_tool_registry(
        deep_mode=True, web_search=web, orchestrator=_orchestrator(fakes), has_memory_owner=True
    )
    without_owner = build_tool_registry(
        deep_mode=True, web_search=web, orchestrator=_orchestrator(fakes), has_memory_owner=False
    )

    assert with_owner.names == [
        WEB_SEARCH,
        RETRIEVE_CONTENT_FROM_URL,
        DEEP_THINK_PROGRESS,
        PERSONA_MEMORY_SEARCH,
    ]
    assert PERSONA_MEMORY_SEARCH not in without_owner.names
    assert with_owner.openai_schemas()[0]["function"]["name"] == WEB_SEARCH


@pytest.mark.asyncio
async def test_web_search_tool_reports_results_and_cache(fakes, memory_cache) -> None:
    """Results with a URL become references; repeats are served from the cache."""
    client = fakes.FakeWebClient(HITS)
    registry = build_tool_registry(
        deep_mode=False, web_search=WebSearchService(client, memory_cache, timeout=1.0)
    )
    ctx, _ = _context(deep=False)

    first = await registry.execute(WEB_SEARCH, {"query": "remote work"}, ctx)
    second = await registry.execute(WEB_SEARCH, {"query": "remote work"}, ctx)

    assert first.output["numberOfResults"] == 2
    assert [r.id for r in first.references] == ["https://example.com/report"]
    assert first.summary == "Found 2 web results"
    assert second.summary == "Found 2 web results (cached)"
    assert client.queries == ["remote work"]


@pytest.mark.asyncio
async def test_web_search_requires_query(fakes, memory_cache) -> None:
    """A blank query is a user input error."""
    registry = build_tool_registry(
        deep_mode=False, web_search=_web(fakes, memory_cache)
    )
    ctx, _ = _context(deep=False)

    result = await registry.execute(WEB_SEARCH, {"query": "  "}, ctx)

    assert result.is_error
    assert result.output["category"] == "user_input_error"


@pytest.mark.asyncio
async def test_memory_search_rejects_short_queries(fakes) -> None:
    """Queries under three characters never reach the sources."""
    store = fakes.FakeMemoryStore([fakes.memory("m1", "Remote work", 0.9)])
    orchestrator = RetrievalOrchestrator([MemoryRetriever(store)])
    registry = ToolRegistry([persona_memory_search_tool(orchestrator)])
    ctx, _ = _context()

    result = await registry.execute(PERSONA_MEMORY_SEARCH, {"query": "ab"}, ctx)

    assert result.is_error
    assert result.output["error"] == "query must be at least 3 characters"
    assert store.calls == []


@pytest.mark.asyncio
async def test_memory_search_requires_owner(fakes) -> None:
    """Without a memory owner there is nothing to search."""
    registry = ToolRegistry([persona_memory_search_tool(_orchestrator(fakes))])
    ctx, _ = _context(owner=None)

    result = await registry.execute(PERSONA_MEMORY_SEARCH, {"query": "remote work"}, ctx)

    assert result.is_error
    assert result.output["error"] == "no personal knowledge base available"


@pytest.mark.asyncio
async def test_memory_search_returns_capped_references(fakes) -> None:
    """Results are capped per source and reported with deep-think progress."""
    orchestrator = _orchestrator(
        fakes,
        memories=[
            fakes.memory("m1", "Remote work gave me focus", 0.9, source="linkedin"),
            fakes.memory("m2", "Async standups saved our mornings", 0.8),
        ],
        contents=[fakes.content(42, "My post on remote work", 0.7)],
    )
    registry = ToolRegistry([persona_memory_search_tool(orchestrator, max_items_per_source=1)])
    ctx, transport = _context()

    result = await registry.execute(PERSONA_MEMORY_SEARCH, {"query": "remote work"}, ctx)

    assert [r.identity for r in result.references] == [("m1", "memory"), ("42", "content")]
    assert result.output["totalResults"] == 2
    assert result.output["references"][1]["link"] == "https://example.com/posts/42"
    assert result.output["references"][1]["platform"] == "linkedin"
    stages = [e["progress"]["stage"] for e in transport.events]
    assert stages == ["research", "analysis"]


@pytest.mark.asyncio
async def test_retrieve_content_caps_urls(fakes, memory_cache) -> None:
    """At most three URLs are fetched per call."""
    fetched: list[tuple[str, int]] = []

    async def fetcher(url: str, max_characters: int) -> dict:
        fetched.append((url, max_characters))
        return {"url": url, "success": not url.endswith("4"), "content": "text"}

    registry = build_tool_registry(
        deep_mode=False,
        web_search=_web(fakes, memory_cache),
        fetcher=fetcher,
    )
    ctx, _ = _context(deep=False)
    urls = [f"https://example.com/{i}" for i in range(1, 6)]

    result = await registry.execute(RETRIEVE_CONTENT_FROM_URL, {"urls": urls}, ctx)

    assert fetched == [(u, 6000) for u in urls[:3]]
    assert result.output["succeeded"] == 3
    assert result.output["failed"] == 0
    assert result.summary == "Fetched 3 of 3 pages"


@pytest.mark.asyncio
async def test_retrieve_content_accepts_single_url_and_clamps_length(fakes, memory_cache) -> None:
    """A bare string is treated as one URL; maxCharacters is clamped to the limit."""
    fetched: list[tuple[str, int]] = []

    async def fetcher(url: str, max_characters: int) -> dict:
        fetched.append((url, max_characters))
        return {"url": url, "success": False, "error": "timeout"}

    registry = build_tool_registry(
        deep_mode=False,
        web_search=_web(fakes, memory_cache),
        fetcher=fetcher,
    )
    ctx, _ = _context(deep=False)

    result = await registry.execute(
        RETRIEVE_CONTENT_FROM_URL,
        {"urls": "https://example.com/a", "maxCharacters": 1_000_000},
        ctx,
    )

    assert fetched == [("https://example.com/a", 20000)]
    assert result.output["failed"] == 1


@pytest.mark.asyncio
async def test_deep_think_progress_emits_update(fakes, memory_cache) -> None:
    """A valid progress call is forwarded to the client."""
    registry = build_tool_registry(
        deep_mode=True, web_search=_web(fakes, memory_cache)
    )
    ctx, transport = _context()

    result = await registry.execute(
        DEEP_THINK_PROGRESS,
        {"stage": "planning", "message": "Checking sources", "planStep": 1, "totalSteps": 3},
        ctx,
    )

    assert result.output == {"acknowledged": True}
    progress = transport.events[0]["progress"]
    assert progress["stage"] == "planning"
    assert progress["message"] == "Checking sources"
    assert progress["planStep"] == 1
    assert progress["totalSteps"] == 3


@pytest.mark.asyncio
async def test_deep_think_progress_rejects_unknown_stage(fakes, memory_cache) -> None:
    """Stages outside the known set are refused."""
    registry = build_tool_registry(
        deep_mode=True, web_search=_web(fakes, memory_cache)
    )
    ctx, transport = _context()

    result = await registry.execute(
        DEEP_THINK_PROGRESS, {"stage": "dreaming", "message": "x"}, ctx
    )

    assert result.is_error
    assert transport.events == []
