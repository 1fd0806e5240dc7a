"""The model-callable tools and per-mode registry assembly.

Tools available by mode:
    default: webSearch, retrieveContentFromUrl
    deep:    webSearch, retrieveContentFromUrl, deepThinkProgress,
             personaMemorySearch (only when the persona has a memory owner)
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from persona.core.config import settings
from persona.core.errors import ToolExecutionError
from persona.engine.tools import Tool, ToolContext, ToolOutput, ToolRegistry
from persona.models.schemas import SOURCE_CONTENT, SOURCE_MEMORY, RetrievalRequest
from persona.retrieval.orchestrator import RetrievalOrchestrator
from persona.retrieval.retrievers import web_to_retrieval_result
from persona.retrieval.web_search import WebSearchService
from persona.tools.fetch_url import fetch_url_text

logger = structlog.get_logger(__name__)

WEB_SEARCH = "webSearch"
RETRIEVE_CONTENT_FROM_URL = "retrieveContentFromUrl"
PERSONA_MEMORY_SEARCH = "personaMemorySearch"
DEEP_THINK_PROGRESS = "deepThinkProgress"

MAX_URLS_PER_CALL = 3
DEFAULT_MAX_CHARACTERS = 6000
MAX_CHARACTERS_LIMIT = 20000
MIN_MEMORY_QUERY_LENGTH = 3
MAX_MEMORY_RESULTS = 40
MAX_WEB_RESULTS = 25

UrlFetcher = Callable[[str, int], Awaitable[dict]]


def _int_arg(
    tool_name: str, arguments: dict[str, Any], key: str, default: int, low: int, high: int
) -> int:
    value = arguments.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ToolExecutionError(tool_name, f"{key} must be a number")
    return max(low, min(high, int(value)))


# ---------------------------------------------------------------------------
# webSearch
# ---------------------------------------------------------------------------


def web_search_tool(web_search: WebSearchService) -> Tool:
    async def handler(arguments: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        query = str(arguments.get("query") or "").strip()
        if not query:
            raise ToolExecutionError(WEB_SEARCH, "query is required")
        max_results = _int_arg(WEB_SEARCH, arguments, "maxResults", 10, 1, MAX_WEB_RESULTS)

        outcome = await web_search.search(ctx.conversation_id, query, max_results)
        references = [
            web_to_retrieval_result(result, rank)
            for rank, result in enumerate(outcome.results)
            if result.get("url")
        ]
        await ctx.progress.emit(
            "research",
            "Web search completed",
            metadata={"query": query, "results": len(outcome.results), "cached": outcome.cached},
        )
        return ToolOutput(
            output=outcome.to_payload(),
            references=references,
            summary=(
                f"Found {len(outcome.results)} web results"
                + (" (cached)" if outcome.cached else "")
            ),
        )

    return Tool(
        name=WEB_SEARCH,
        description=(
            "Search the web for current information. Avoid repeating a query already "
            "listed as performed in this conversation."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "maxResults": {"type": "integer", "minimum": 1, "maximum": MAX_WEB_RESULTS},
            },
            "required": ["query"],
        },
        handler=handler,
        reference_key="results",
    )


# ---------------------------------------------------------------------------
# personaMemorySearch
# ---------------------------------------------------------------------------


def persona_memory_search_tool(
    orchestrator: RetrievalOrchestrator, max_items_per_source: int | None = None
) -> Tool:
    per_source = max_items_per_source or settings.DEEP_MODE_MAX_ITEMS_PER_SOURCE
    default_results = max(per_source * 2, 10)

    async def handler(arguments: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        query = str(arguments.get("query") or "").strip()
        if len(query) < MIN_MEMORY_QUERY_LENGTH:
            raise ToolExecutionError(
                PERSONA_MEMORY_SEARCH,
                f"query must be at least {MIN_MEMORY_QUERY_LENGTH} characters",
            )
        if not ctx.memory_owner_id:
            raise ToolExecutionError(PERSONA_MEMORY_SEARCH, "no personal knowledge base available")
        max_results = _int_arg(
            PERSONA_MEMORY_SEARCH, arguments, "maxResults", default_results, 1, MAX_MEMORY_RESULTS
        )

        await ctx.progress.emit("research", "Personal knowledge search", metadata={"query": query})
        response = await orchestrator.retrieve(
            RetrievalRequest(
                query=query,
                user_id=ctx.memory_owner_id,
                app_id=ctx.app_id,
                conversation_id=ctx.conversation_id,
                max_results=max_results,
                sources=[SOURCE_MEMORY, SOURCE_CONTENT],
            )
        )

        per_source_counts: dict[str, int] = {}
        references = []
        for result in response.results:
            count = per_source_counts.get(result.source, 0)
            if count >= per_source:
                continue
            per_source_counts[result.source] = count + 1
            references.append(result)

        await ctx.progress.emit(
            "analysis",
            "Personal knowledge findings",
            confidence=response.confidence_level,
            metadata={"results": len(references), "sources": response.sources_used},
        )
        return ToolOutput(
            output={
                "query": query,
                "confidence": response.confidence_level,
                "totalResults": len(references),
                "sourcesUsed": response.sources_used,
                "references": [
                    {
                        "id": r.id,
                        "source": r.source,
                        "type": r.type,
                        "content": r.content,
                        "relevanceScore": r.relevance_score,
                        "createdAt": r.created_at.isoformat() if r.created_at else None,
                        "link": r.metadata.get("link"),
                        "platform": r.metadata.get("platform"),
                    }
                    for r in references
                ],
            },
            references=references,
            summary=(
                f"Found {len(references)} personal references "
                f"({response.confidence_level} confidence)"
            ),
        )

    return Tool(
        name=PERSONA_MEMORY_SEARCH,
        description=(
            "Search your own memories and published content for experiences, opinions "
            "and facts relevant to the conversation."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": MIN_MEMORY_QUERY_LENGTH},
                "maxResults": {"type": "integer", "minimum": 1, "maximum": MAX_MEMORY_RESULTS},
            },
            "required": ["query"],
        },
        handler=handler,
        reference_key="references",
    )


# ---------------------------------------------------------------------------
# retrieveContentFromUrl
# ---------------------------------------------------------------------------


def retrieve_content_tool(fetcher: UrlFetcher | None = None) -> Tool:
    fetch = fetcher or (lambda url, max_chars: fetch_url_text(url, max_characters=max_chars))

    async def handler(arguments: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        urls = arguments.get("urls")
        if isinstance(urls, str):
            urls = [urls]
        if not isinstance(urls, list) or not urls:
            raise ToolExecutionError(RETRIEVE_CONTENT_FROM_URL, "urls must be a non-empty list")
        urls = [str(u).strip() for u in urls if str(u).strip()][:MAX_URLS_PER_CALL]
        max_characters = _int_arg(
            RETRIEVE_CONTENT_FROM_URL,
            arguments,
            "maxCharacters",
            DEFAULT_MAX_CHARACTERS,
            1,
            MAX_CHARACTERS_LIMIT,
        )

        pages = await asyncio.gather(*(fetch(url, max_characters) for url in urls))
        succeeded = sum(1 for p in pages if p.get("success"))
        await ctx.progress.emit(
            "analysis",
            "Fetched external content",
            metadata={"requested": len(urls), "succeeded": succeeded},
        )
        return ToolOutput(
            output={"pages": list(pages), "succeeded": succeeded, "failed": len(pages) - succeeded},
            summary=f"Fetched {succeeded} of {len(urls)} pages",
        )

    return Tool(
        name=RETRIEVE_CONTENT_FROM_URL,
        description="Fetch up to three web pages and return their readable text.",
        parameters={
            "type": "object",
            "properties": {
                "urls": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "maxItems": MAX_URLS_PER_CALL,
                },
                "maxCharacters": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_CHARACTERS_LIMIT,
                },
            },
            "required": ["urls"],
        },
        handler=handler,
    )


# ---------------------------------------------------------------------------
# deepThinkProgress
# ---------------------------------------------------------------------------

_STAGES = ("planning", "research", "analysis", "synthesis", "reflection", "note")


def deep_think_progress_tool() -> Tool:
    async def handler(arguments: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        stage = arguments.get("stage")
        message = str(arguments.get("message") or "").strip()
        if stage not in _STAGES:
            raise ToolExecutionError(
                DEEP_THINK_PROGRESS, f"stage must be one of {', '.join(_STAGES)}"
            )
        if not message:
            raise ToolExecutionError(DEEP_THINK_PROGRESS, "message is required")
        await ctx.progress.emit(
            stage,
            message,
            label=arguments.get("label"),
            plan_step=arguments.get("planStep"),
            total_steps=arguments.get("totalSteps"),
            confidence=arguments.get("confidence"),
        )
        return ToolOutput(output={"acknowledged": True}, summary=f"{stage} update sent")

    return Tool(
        name=DEEP_THINK_PROGRESS,
        description="Share a short progress update about your deep-think process with the user.",
        parameters={
            "type": "object",
            "properties": {
                "stage": {"type": "string", "enum": list(_STAGES)},
                "message": {"type": "string"},
                "label": {"type": "string"},
                "planStep": {"type": "integer"},
                "totalSteps": {"type": "integer"},
                "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
            },
            "required": ["stage", "message"],
        },
        handler=handler,
    )


def build_tool_registry(
    *,
    deep_mode: bool,
    web_search: WebSearchService,
    orchestrator: RetrievalOrchestrator | None = None,
    has_memory_owner: bool = False,
    fetcher: UrlFetcher | None = None,
) -> ToolRegistry:
    registry = ToolRegistry([web_search_tool(web_search), retrieve_content_tool(fetcher)])
    if deep_mode:
        registry.register(deep_think_progress_tool())
        if has_memory_owner and orchestrator is not None:
            registry.register(persona_memory_search_tool(orchestrator))
    logger.debug("tools.registry_built", deep_mode=deep_mode, tools=registry.names)
    return registry
