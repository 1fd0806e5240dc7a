"""Per-conversation web search cache and query history.

Two pieces of state are kept per conversation id:

- cached web search results keyed by the normalised query, each expiring
  ``ttl_seconds`` after it was stored;
- a bounded, most-recent-last history of the queries already searched, which
  is injected into the system prompt so the model does not repeat them.

Absence is never an error: a missing conversation id, a missing entry or an
expired entry all read as a cache miss. Writes with no conversation id are
ignored.

``InMemoryConversationCache`` is process-local. Each process then holds its own
independent cache; deployments running several instances use
``RedisConversationCache`` to share it.
"""

import json
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as redis
import structlog
from cachetools import LRUCache
from redis.exceptions import WatchError

from persona.core.config import CacheKeys, Settings
from persona.core.metrics import cache_hits_total, cache_misses_total
from persona.models.schemas import CacheEntry, QueryHistoryEntry
from persona.retrieval.query_analyzer import normalize_query_text

logger = structlog.get_logger(__name__)

CACHED_SUFFIX = " (cached)"
_HISTORY_WRITE_ATTEMPTS = 10


class ConversationCache(Protocol):
    async def get_cached(self, conversation_id: str | None, query: str) -> CacheEntry | None: ...

    async def set_cached(
        self, conversation_id: str | None, query: str, result: dict[str, Any]
    ) -> None: ...

    async def evict(self, conversation_id: str | None, query: str | None = None) -> None: ...

    async def record_query(
        self, conversation_id: str | None, query: str, was_cached: bool
    ) -> None: ...

    async def recent_queries(self, conversation_id: str | None) -> list[str]: ...


def _display_text(query: str, was_cached: bool) -> str:
    text = query.strip()
    return f"{text}{CACHED_SUFFIX}" if was_cached else text


def _push_history(
    history: list[QueryHistoryEntry], query: str, was_cached: bool, max_history: int
) -> list[QueryHistoryEntry]:
    normalized = normalize_query_text(query)
    updated = [entry for entry in history if entry.normalized_query != normalized]
    updated.append(
        QueryHistoryEntry(
            normalized_query=normalized, display_text=_display_text(query, was_cached)
        )
    )
    return updated[-max_history:]


class InMemoryConversationCache:
    """Process-local cache; abandoned conversations fall out of an LRU."""

    backend = "memory"

    def __init__(
        self,
        ttl_seconds: float = 900,
        max_history: int = 10,
        max_conversations: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._max_history = max_history
        self._clock = clock
        self._results: LRUCache[str, dict[str, CacheEntry]] = LRUCache(maxsize=max_conversations)
        self._history: LRUCache[str, list[QueryHistoryEntry]] = LRUCache(
            maxsize=max_conversations
        )

    async def get_cached(self, conversation_id: str | None, query: str) -> CacheEntry | None:
        if not conversation_id:
            return None
        normalized = normalize_query_text(query)
        entries = self._results.get(conversation_id)
        entry = entries.get(normalized) if entries else None
        if entry is None:
            cache_misses_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
            return None

        if self._clock() - entry.timestamp > self._ttl:
            del entries[normalized]
            if not entries:
                self._results.pop(conversation_id, None)
            logger.debug(
                "conversation_cache.expired",
                conversation_id=conversation_id,
                query_preview=normalized[:80],
            )
            cache_misses_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
            return None

        cache_hits_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
        return entry

    async def set_cached(
        self, conversation_id: str | None, query: str, result: dict[str, Any]
    ) -> None:
        if not conversation_id:
            return
        normalized = normalize_query_text(query)
        entries = self._results.get(conversation_id)
        if entries is None:
            entries = {}
            self._results[conversation_id] = entries
        entries[normalized] = CacheEntry(
            normalized_query=normalized, timestamp=self._clock(), result=result
        )

    async def evict(self, conversation_id: str | None, query: str | None = None) -> None:
        if not conversation_id:
            return
        if query is None:
            self._results.pop(conversation_id, None)
            self._history.pop(conversation_id, None)
            return
        entries = self._results.get(conversation_id)
        if entries:
            entries.pop(normalize_query_text(query), None)
            if not entries:
                self._results.pop(conversation_id, None)

    async def record_query(
        self, conversation_id: str | None, query: str, was_cached: bool
    ) -> None:
        if not conversation_id or not query.strip():
            return
        history = self._history.get(conversation_id, [])
        self._history[conversation_id] = _push_history(
            history, query, was_cached, self._max_history
        )

    async def recent_queries(self, conversation_id: str | None) -> list[str]:
        if not conversation_id:
            return []
        return [entry.display_text for entry in self._history.get(conversation_id, [])]


class RedisConversationCache:
    """Redis-backed cache shared by every API instance.

    Results live in one hash per conversation (field = normalised query,
    value = JSON ``{timestamp, result}``). The hash expires with the TTL of its
    newest entry; individual entries are also checked against the TTL on
    read. History is a JSON list under its own key, rewritten in a WATCH/MULTI
    transaction that retries when another writer got there first.
    """

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: float = 900,
        max_history: int = 10,
        history_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = client
        self._ttl = ttl_seconds
        self._max_history = max_history
        self._history_ttl = history_ttl_seconds
        self._clock = clock

    @staticmethod
    def _results_key(conversation_id: str) -> str:
        return f"{CacheKeys.WEB_SEARCH_RESULTS}:{conversation_id}"

    @staticmethod
    def _history_key(conversation_id: str) -> str:
        return f"{CacheKeys.WEB_SEARCH_HISTORY}:{conversation_id}"

    async def get_cached(self, conversation_id: str | None, query: str) -> CacheEntry | None:
        if not conversation_id:
            return None
        normalized = normalize_query_text(query)
        key = self._results_key(conversation_id)
        raw = await self._redis.hget(key, normalized)
        if raw is None:
            cache_misses_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
            return None

        try:
            payload = json.loads(raw)
            entry = CacheEntry(
                normalized_query=normalized,
                timestamp=float(payload["timestamp"]),
                result=payload["result"],
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(
                "conversation_cache.corrupt_entry",
                conversation_id=conversation_id,
                query_preview=normalized[:80],
            )
            await self._redis.hdel(key, normalized)
            cache_misses_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
            return None

        if self._clock() - entry.timestamp > self._ttl:
            # Redis drops the hash itself once its last field is removed.
            await self._redis.hdel(key, normalized)
            cache_misses_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
            return None

        cache_hits_total.labels(cache_backend=self.backend, cache_type="web_search").inc()
        return entry

    async def set_cached(
        self, conversation_id: str | None, query: str, result: dict[str, Any]
    ) -> None:
        if not conversation_id:
            return
        normalized = normalize_query_text(query)
        key = self._results_key(conversation_id)
        value = json.dumps({"timestamp": self._clock(), "result": result}, default=str)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, normalized, value)
            pipe.expire(key, max(int(self._ttl), 1))
            await pipe.execute()

    async def evict(self, conversation_id: str | None, query: str | None = None) -> None:
        if not conversation_id:
            return
        if query is None:
            await self._redis.delete(
                self._results_key(conversation_id), self._history_key(conversation_id)
            )
            return
        await self._redis.hdel(self._results_key(conversation_id), normalize_query_text(query))

    async def _load_history(self, conversation_id: str) -> list[QueryHistoryEntry]:
        raw = await self._redis.get(self._history_key(conversation_id))
        return _decode_history(raw, conversation_id)

    async def record_query(
        self, conversation_id: str | None, query: str, was_cached: bool
    ) -> None:
        if not conversation_id or not query.strip():
            return
        key = self._history_key(conversation_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(_HISTORY_WRITE_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    history = _decode_history(await pipe.get(key), conversation_id)
                    updated = _push_history(history, query, was_cached, self._max_history)
                    pipe.multi()
                    pipe.set(
                        key,
                        json.dumps([entry.model_dump() for entry in updated]),
                        ex=self._history_ttl,
                    )
                    await pipe.execute()
                    return
                except WatchError:
                    continue
        logger.warning(
            "conversation_cache.history_write_contended", conversation_id=conversation_id
        )

    async def recent_queries(self, conversation_id: str | None) -> list[str]:
        if not conversation_id:
            return []
        return [entry.display_text for entry in await self._load_history(conversation_id)]


def _decode_history(raw: str | None, conversation_id: str) -> list[QueryHistoryEntry]:
    if not raw:
        return []
    try:
        return [QueryHistoryEntry(**item) for item in json.loads(raw)]
    except (json.JSONDecodeError, TypeError, ValueError):
        logger.warning("conversation_cache.corrupt_history", conversation_id=conversation_id)
        return []


async def build_conversation_cache(config: Settings) -> ConversationCache:
    """Create the cache backend selected by ``CONVERSATION_CACHE_BACKEND``."""
    if config.CONVERSATION_CACHE_BACKEND == "redis":
        from persona.core.redis import get_redis

        client = await get_redis()
        logger.info("conversation_cache.backend", backend="redis")
        return RedisConversationCache(
            client,
            ttl_seconds=config.WEB_SEARCH_CACHE_TTL,
            max_history=config.WEB_SEARCH_HISTORY_MAX,
        )

    logger.info("conversation_cache.backend", backend="memory")
    return InMemoryConversationCache(
        ttl_seconds=config.WEB_SEARCH_CACHE_TTL,
        max_history=config.WEB_SEARCH_HISTORY_MAX,
        max_conversations=config.CONVERSATION_CACHE_MAX_CONVERSATIONS,
    )
