"""In-process content store for a persona's published content.

Holds posts, articles and linked documents per owner and ranks them by
lexical overlap with the query. Serves local runs and tests; production
deployments plug in their own ``ContentStore`` implementation.
"""

import re
from collections import defaultdict
from collections.abc import Iterable

import structlog

from persona.models.schemas import ContentSearchResult

logger = structlog.get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
_IGNORED_TOKENS = frozenset(
    "a an and are as at be by do does for from have how i in is it me my of on or "
    "the to was what when where who why with you your".split()
)

SOCIAL_LINK_TEMPLATES: dict[str, str] = {
    "linkedin": "https://linkedin.com/feed/update/{id}",
    "twitter": "https://twitter.com/status/{id}",
    "facebook": "https://facebook.com/{id}",
    "instagram": "https://instagram.com/p/{id}",
    "reddit": "https://reddit.com/comments/{id}",
    "medium": "https://medium.com/p/{id}",
    "github": "https://github.com/{id}",
}


def social_link(source: str | None, external_id: str | None) -> str:
    """Public URL of a social post, or "" for unknown platforms."""
    if not source or not external_id:
        return ""
    if external_id.startswith(("http://", "https://")):
        return external_id
    template = SOCIAL_LINK_TEMPLATES.get(source.lower())
    return template.format(id=external_id) if template else ""


def _tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_PATTERN.findall(text.lower()) if t not in _IGNORED_TOKENS}


class StaticContentStore:
    def __init__(self, items: Iterable[tuple[str, ContentSearchResult]] = ()):
        self._items: dict[str, list[ContentSearchResult]] = defaultdict(list)
        for owner_id, item in items:
            self.add(owner_id, item)

    def add(self, owner_id: str, item: ContentSearchResult) -> None:
        if not item.link:
            item = item.model_copy(
                update={"link": social_link(item.source, item.metadata.get("externalId")) or None}
            )
        self._items[owner_id].append(item)

    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[ContentSearchResult]:
        query_tokens = _tokens(query)
        if not query_tokens:
            return []

        scored: list[ContentSearchResult] = []
        for item in self._items.get(user_id, []):
            if app_id and item.metadata.get("appId") not in (None, app_id):
                continue
            overlap = len(query_tokens & _tokens(item.content)) / len(query_tokens)
            if overlap <= 0:
                continue
            scored.append(item.model_copy(update={"relevance_score": round(overlap, 4)}))

        scored.sort(key=lambda r: r.relevance_score, reverse=True)
        logger.debug("content_store.search", query_preview=query[:80], result_count=len(scored))
        return scored
