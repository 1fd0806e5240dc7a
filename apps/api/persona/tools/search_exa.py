"""Exa neural web search client.

``ExaSearchClient.search`` never raises. Every failure (no key, timeout, HTTP
error, open circuit) comes back as an empty list, which the web search
retriever and the webSearch tool read as "no live results".
"""

import time

import httpx
import structlog
from pybreaker import CircuitBreaker

from persona.core.circuit_breaker import call_with_circuit_breaker, exa_breaker
from persona.core.config import settings
from persona.core.errors import SourceFailureError
from persona.core.metrics import api_call_duration_seconds, api_calls_total
from persona.core.rate_limiter import rate_limited_call
from persona.core.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

EXA_SEARCH_URL = "https://api.exa.ai/search"
_MAX_CHARACTERS = 1500
_MAX_QUERY_LENGTH = 1000
_MAX_NUM_RESULTS = 25


def _normalize_result(raw: dict) -> dict:
    """Map an Exa hit onto the keys the web search layer reads.

    Keys: title, url, content (page text cut to 1500 chars), score,
    published_date, author, source ("exa").
    """
    text = raw.get("text")
    return {
        "title": raw.get("title") or "",
        "url": raw.get("url") or "",
        "content": text[:_MAX_CHARACTERS] if isinstance(text, str) else "",
        "score": raw.get("score"),
        "published_date": raw.get("publishedDate"),
        "author": raw.get("author"),
        "source": "exa",
    }


def _search_payload(query: str, num_results: int) -> dict:
    return {
        "query": query,
        "type": "neural",
        "numResults": num_results,
        "useAutoprompt": True,
        "contents": {"text": {"maxCharacters": _MAX_CHARACTERS}},
    }


class ExaSearchClient:
    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        max_attempts: int = 3,
    ):
        self._api_key = settings.EXA_API_KEY if api_key is None else api_key
        self._timeout = settings.WEB_SEARCH_TIMEOUT if timeout is None else timeout
        self._http_client = http_client
        self._breaker = breaker or exa_breaker
        self._max_attempts = max_attempts

    async def _send(self, client: httpx.AsyncClient, payload: dict) -> dict:
        response = await client.post(
            EXA_SEARCH_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def _post(self, payload: dict) -> dict:
        if self._http_client is not None:
            return await self._send(self._http_client, payload)
        async with httpx.AsyncClient() as client:
            return await self._send(client, payload)

    async def _fetch(self, query: str, num_results: int) -> list[dict]:
        payload = _search_payload(query, num_results)
        started = time.perf_counter()
        try:
            body = await retry_with_backoff(
                lambda: rate_limited_call("exa", self._post, payload),
                max_attempts=self._max_attempts,
                base_delay=1.0,
                max_delay=8.0,
            )
        finally:
            api_call_duration_seconds.labels(api_name="exa").observe(time.perf_counter() - started)

        if body is None:
            api_calls_total.labels(api_name="exa", status="failure").inc()
            # the breaker only sees failures that raise
            raise SourceFailureError("exa", "no response after retries")
        api_calls_total.labels(api_name="exa", status="success").inc()

        hits = body.get("results")
        if not isinstance(hits, list):
            return []
        return [_normalize_result(h) for h in hits if isinstance(h, dict) and h.get("url")]

    async def search(self, query: str, max_results: int = 10) -> list[dict]:
        """Neural web search; at most 25 normalized results, [] on any failure."""
        if not self._api_key:
            logger.error("exa.not_configured")
            return []

        query = (query or "").strip()[:_MAX_QUERY_LENGTH]
        if not query:
            logger.warning("exa.blank_query")
            return []

        num_results = min(max(int(max_results), 1), _MAX_NUM_RESULTS)
        log = logger.bind(query_preview=query[:80], num_results=num_results)
        log.debug("exa.search")

        hits = await call_with_circuit_breaker(self._breaker, self._fetch, query, num_results)
        log.info("exa.search_done", hit_count=len(hits))
        return hits
