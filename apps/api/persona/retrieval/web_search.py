"""Conversation-aware web search shared by the web retriever and the webSearch tool.

Order of operations for one search:
1. the conversation cache is consulted; a fresh hit is returned as-is;
2. otherwise the live client is called under a bounded timeout;
3. non-empty live results are cached for the conversation;
4. the query is recorded in the conversation's search history, flagged
   as cached or not.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from persona.cache.conversation_cache import ConversationCache
from persona.models.schemas import SOURCE_WEB

logger = structlog.get_logger(__name__)


class WebSearchClient(Protocol):
    async def search(self, query: str, max_results: int = 10) -> list[dict]: ...


@dataclass
class WebSearchOutcome:
    query: str
    results: list[dict] = field(default_factory=list)
    cached: bool = False
    cached_at: float | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": self.query,
            "results": [
                {
                    "id": r.get("url", ""),
                    "title": r.get("title", ""),
                    "url": r.get("url", ""),
                    "content": r.get("content", ""),
                    "source": SOURCE_WEB,
                    "publishedDate": r.get("published_date"),
                }
                for r in self.results
            ],
            "numberOfResults": len(self.results),
            "cached": self.cached,
        }
        if self.cached_at is not None:
            payload["cachedAt"] = datetime.fromtimestamp(self.cached_at, tz=UTC).isoformat()
        return payload


class WebSearchService:
    def __init__(self, client: WebSearchClient, cache: ConversationCache, timeout: float):
        self._client = client
        self._cache = cache
        self._timeout = timeout

    @property
    def cache(self) -> ConversationCache:
        return self._cache

    async def search(
        self, conversation_id: str | None, query: str, max_results: int = 10
    ) -> WebSearchOutcome:
        query = query.strip()
        entry = await self._cache.get_cached(conversation_id, query)
        if entry is not None:
            logger.info(
                "web_search.cache_hit",
                conversation_id=conversation_id,
                query_preview=query[:80],
            )
            await self._cache.record_query(conversation_id, query, was_cached=True)
            return WebSearchOutcome(
                query=query,
                results=list(entry.result.get("results", [])),
                cached=True,
                cached_at=entry.timestamp,
            )

        try:
            results = await asyncio.wait_for(
                self._client.search(query, max_results), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning(
                "web_search.timeout", timeout=self._timeout, query_preview=query[:80]
            )
            results = []

        if results:
            await self._cache.set_cached(
                conversation_id, query, {"query": query, "results": results}
            )
        await self._cache.record_query(conversation_id, query, was_cached=False)
        return WebSearchOutcome(query=query, results=results)
