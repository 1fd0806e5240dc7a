"""Unit tests for URL fetching and HTML text extraction."""

import httpx
import pytest

from persona.core.config import settings
from persona.core.url_safety import is_safe_public_url
from persona.tools.fetch_url import fetch_url_text, html_to_text

PAGE = """
<html>
  <head><title>Remote work, five years on</title><script>track()</script></head>
  <body>
    <nav>Home | About</nav>
    <article>
      <h1>Remote work, five years on</h1>
      <p>Teams that write things down ship faster.</p>
    </article>
    <footer>Copyright</footer>
  </body>
</html>
"""


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_html_to_text_keeps_article_body() -> None:
    """Navigation, scripts and footers are stripped; the article text remains."""
    title, text = html_to_text(PAGE)

    assert title == "Remote work, five years on"
    assert text.splitlines() == [
        "Remote work, five years on",
        "Teams that write things down ship faster.",
    ]


@pytest.mark.parametrize(
    ("url", "reason"),
    [
        ("ftp://example.com/file", "invalid_scheme"),
        ("http://localhost:8000/admin", "blocked_hostname"),
        ("http://169.254.169.254/latest/meta-data", "private_ip"),
        ("http://10.0.0.5/", "private_ip"),
        ("https://printer.local/", "blocked_hostname"),
        ("https:///nohost", "missing_hostname"),
    ],
)
def test_unsafe_urls_are_rejected(url: str, reason: str) -> None:
    """Local, private and non-http targets are never fetched."""
    assert is_safe_public_url(url) == (False, reason)


@pytest.mark.asyncio
async def test_blocked_url_is_not_requested() -> None:
    """A private address comes back as a failed page without any request."""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    result = await fetch_url_text("http://192.168.1.1/", http_client=_http(handler))

    assert result == {"url": "http://192.168.1.1/", "success": False, "error": "private_ip"}
    assert calls == []


@pytest.mark.asyncio
async def test_html_page_is_converted_and_truncated() -> None:
    """HTML responses are reduced to text and cut at max_characters."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html; charset=utf-8"})

    result = await fetch_url_text(
        "https://example.com/remote", max_characters=20, http_client=_http(handler)
    )

    assert result["success"] is True
    assert result["title"] == "Remote work, five years on"
    assert result["content"] == "Remote work, five ye"
    assert result["truncated"] is True


@pytest.mark.asyncio
async def test_http_error_status_is_reported() -> None:
    """Error statuses are returned as error codes."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    result = await fetch_url_text("https://example.com/missing", http_client=_http(handler))

    assert result == {"url": "https://example.com/missing", "success": False, "error": "http_404"}


@pytest.mark.asyncio
async def test_binary_content_is_unsupported() -> None:
    """Non-text payloads are not returned to the model."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"%PDF-1.7", headers={"content-type": "application/pdf"})

    result = await fetch_url_text("https://example.com/doc.pdf", http_client=_http(handler))

    assert result["success"] is False
    assert result["error"] == "unsupported_content_type"


@pytest.mark.asyncio
async def test_redirect_to_private_address_is_not_followed() -> None:
    """Each redirect hop is checked; a hop to a metadata address is never requested."""
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.host == "public.example.com":
            return httpx.Response(
                302, headers={"location": "http://169.254.169.254/latest/meta-data"}
            )
        return httpx.Response(200, text="SECRET-CREDS", headers={"content-type": "text/plain"})

    result = await fetch_url_text("http://public.example.com/page", http_client=_http(handler))

    assert result["success"] is False
    assert result["error"] == "private_ip"
    assert requested == ["http://public.example.com/page"]


@pytest.mark.asyncio
async def test_relative_redirect_to_public_page_is_followed() -> None:
    """Safe redirects resolve against the current URL and are fetched."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"location": "/new"})
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})

    result = await fetch_url_text("https://example.com/old", http_client=_http(handler))

    assert result["success"] is True
    assert result["title"] == "Remote work, five years on"


@pytest.mark.asyncio
async def test_redirect_loop_stops_at_the_hop_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    """A page that keeps redirecting yields too_many_redirects."""
    monkeypatch.setattr(settings, "URL_FETCH_MAX_REDIRECTS", 2)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(302, headers={"location": "https://example.com/loop"})

    result = await fetch_url_text("https://example.com/loop", http_client=_http(handler))

    assert result["error"] == "too_many_redirects"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_oversized_body_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    """Bodies beyond URL_FETCH_MAX_BYTES are not returned to the model."""
    monkeypatch.setattr(settings, "URL_FETCH_MAX_BYTES", 1024)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="x" * 5000, headers={"content-type": "text/plain"})

    result = await fetch_url_text("https://example.com/huge", http_client=_http(handler))

    assert result["success"] is False
    assert result["error"] == "response_too_large"
