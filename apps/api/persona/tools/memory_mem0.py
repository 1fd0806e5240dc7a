"""Mem0 platform memory search.

``Mem0MemoryStore.search`` returns list[MemorySearchResult], [] on any
failure. Memories belong to the persona owner (``user_id``); when an app id is
given, memories tagged for another app are dropped.
"""

import time
from datetime import datetime

import httpx
import structlog
from pybreaker import CircuitBreaker

from persona.core.circuit_breaker import call_with_circuit_breaker, mem0_breaker
from persona.core.config import settings
from persona.core.errors import SourceFailureError
from persona.core.metrics import api_call_duration_seconds, api_calls_total
from persona.core.rate_limiter import rate_limited_call
from persona.core.retry import retry_with_backoff
from persona.models.schemas import MemorySearchResult

logger = structlog.get_logger(__name__)

_SEARCH_PATH = "/v2/memories/search/"
_DEFAULT_TOP_K = 20


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _to_result(item: dict) -> MemorySearchResult | None:
    memory_id = item.get("id")
    text = item.get("memory")
    if not memory_id or not isinstance(text, str):
        return None
    return MemorySearchResult(
        id=str(memory_id),
        memory=text,
        metadata=item.get("metadata") or {},
        created_at=_parse_datetime(item.get("created_at")),
        relevance_score=item.get("score") or 0.0,
        source="mem0",
    )


class Mem0MemoryStore:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        top_k: int = _DEFAULT_TOP_K,
    ):
        self._api_key = api_key if api_key is not None else settings.MEM0_API_KEY
        self._base_url = (base_url or settings.MEM0_BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.SOURCE_TIMEOUT
        self._http_client = http_client
        self._breaker = breaker or mem0_breaker
        self._top_k = top_k

    async def _post(self, payload: dict) -> list | dict:
        url = f"{self._base_url}{_SEARCH_PATH}"
        headers = {"Authorization": f"Token {self._api_key}"}
        if self._http_client is not None:
            response = await self._http_client.post(
                url, headers=headers, json=payload, timeout=self._timeout
            )
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(url, headers=headers, json=payload)
            response.raise_for_status()
            return response.json()

    async def _search_impl(self, query: str, user_id: str) -> list[dict]:
        payload = {
            "query": query,
            "filters": {"AND": [{"user_id": user_id}]},
            "top_k": self._top_k,
        }
        start_time = time.perf_counter()
        try:
            data = await retry_with_backoff(
                lambda: rate_limited_call("mem0", self._post, payload),
                max_attempts=2,
                base_delay=0.5,
                max_delay=2.0,
            )
        finally:
            api_call_duration_seconds.labels(api_name="mem0").observe(
                time.perf_counter() - start_time
            )

        if data is None:
            api_calls_total.labels(api_name="mem0", status="failure").inc()
            raise SourceFailureError("mem0", "no response after retries")

        api_calls_total.labels(api_name="mem0", status="success").inc()
        if isinstance(data, dict):
            data = data.get("results", [])
        return [item for item in data if isinstance(item, dict)]

    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[MemorySearchResult]:
        if not self._api_key:
            logger.warning("memory_mem0.api_key_missing")
            return []

        items = await call_with_circuit_breaker(self._breaker, self._search_impl, query, user_id)

        results: list[MemorySearchResult] = []
        for item in items:
            result = _to_result(item)
            if result is None:
                continue
            tagged_app = result.metadata.get("appId") or result.metadata.get("app_id")
            if app_id and tagged_app and str(tagged_app) != str(app_id):
                continue
            results.append(result)

        logger.info(
            "memory_mem0.search_complete",
            query_preview=query[:80],
            result_count=len(results),
        )
        return results
