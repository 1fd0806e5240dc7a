"""Fetch a web page and reduce it to readable text.

``fetch_url_text`` never raises; failures come back as a result dict with
``success=False`` and an ``error`` code so the model can see what happened.
Redirects are followed by hand so every hop passes ``is_safe_public_url``.
"""

import time

import httpx
import structlog
from bs4 import BeautifulSoup

from persona.core.config import settings
from persona.core.metrics import api_call_duration_seconds, api_calls_total
from persona.core.url_safety import is_safe_public_url

logger = structlog.get_logger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; PersonaBot/1.0)"
_STRIP_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "aside", "form", "svg")
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class FetchRejected(Exception):
    """A fetch stopped before a usable body was read; ``code`` goes to the model."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def html_to_text(html: str) -> tuple[str, str]:
    """Return (title, body text) for an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    root = soup.find("article") or soup.find("main") or soup.body or soup
    lines = (line.strip() for line in root.get_text("\n").splitlines())
    return title, "\n".join(line for line in lines if line)


def _decode(body: bytes, charset: str | None) -> str:
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


async def _download(
    client: httpx.AsyncClient, url: str, timeout: float, max_redirects: int, max_bytes: int
) -> tuple[str, str]:
    """GET ``url`` following at most ``max_redirects`` checked hops.

    Returns (content type, decoded body). Raises FetchRejected for unsafe hops,
    redirect loops and oversized bodies.
    """
    current = url
    for _ in range(max(0, max_redirects) + 1):
        safe, reason = is_safe_public_url(current)
        if not safe:
            logger.warning("fetch_url.blocked", url=current[:200], reason=reason)
            raise FetchRejected(reason)

        async with client.stream(
            "GET",
            current,
            headers={"User-Agent": _USER_AGENT},
            timeout=timeout,
            follow_redirects=False,
        ) as response:
            if response.status_code in _REDIRECT_STATUSES:
                location = (response.headers.get("location") or "").strip()
                if not location:
                    raise FetchRejected("redirect_missing_location")
                current = str(httpx.URL(current).join(location))
                continue

            response.raise_for_status()
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise FetchRejected("response_too_large")
            content_type = response.headers.get("content-type", "").lower()
            text = _decode(bytes(body), response.charset_encoding)
            return content_type, text

    raise FetchRejected("too_many_redirects")


async def fetch_url_text(
    url: str,
    max_characters: int = 6000,
    http_client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
) -> dict:
    request_timeout = timeout if timeout is not None else settings.URL_FETCH_TIMEOUT
    limits = (settings.URL_FETCH_MAX_REDIRECTS, settings.URL_FETCH_MAX_BYTES)
    start_time = time.perf_counter()
    try:
        if http_client is not None:
            content_type, body = await _download(http_client, url, request_timeout, *limits)
        else:
            async with httpx.AsyncClient(follow_redirects=False) as client:
                content_type, body = await _download(client, url, request_timeout, *limits)
    except FetchRejected as exc:
        return {"url": url, "success": False, "error": exc.code}
    except httpx.TimeoutException:
        api_calls_total.labels(api_name="url_fetch", status="timeout").inc()
        logger.warning("fetch_url.timeout", url=url[:200], timeout=request_timeout)
        return {"url": url, "success": False, "error": "timeout"}
    except httpx.HTTPStatusError as exc:
        api_calls_total.labels(api_name="url_fetch", status="failure").inc()
        logger.warning(
            "fetch_url.http_error", url=url[:200], status_code=exc.response.status_code
        )
        return {"url": url, "success": False, "error": f"http_{exc.response.status_code}"}
    except httpx.HTTPError as exc:
        api_calls_total.labels(api_name="url_fetch", status="failure").inc()
        logger.warning("fetch_url.request_error", url=url[:200], error=str(exc))
        return {"url": url, "success": False, "error": "request_failed"}
    finally:
        api_call_duration_seconds.labels(api_name="url_fetch").observe(
            time.perf_counter() - start_time
        )

    api_calls_total.labels(api_name="url_fetch", status="success").inc()
    if "html" in content_type:
        title, text = html_to_text(body)
    elif content_type.startswith("text/") or "json" in content_type:
        title, text = "", body
    else:
        logger.info("fetch_url.unsupported_content", url=url[:200], content_type=content_type)
        return {"url": url, "success": False, "error": "unsupported_content_type"}

    truncated = len(text) > max_characters
    return {
        "url": url,
        "success": True,
        "title": title,
        "content": text[:max_characters],
        "characters": min(len(text), max_characters),
        "truncated": truncated,
    }
