"""Rule-based query classifier used to bias retrieval across sources.

``QueryAnalyzer.analyze`` is a pure function of the query text: keyword and
regex cues score each intent, the intent mix is blended into per-source
weights, and platform names, time expressions and entities are extracted on
the side. It never fails: empty, ambiguous or unexpected input yields the
balanced default analysis.

The weights only shape how ``max_results`` is split between sources (see
``allocate_max_results``); every source always gets at least one slot.
"""

import re
from collections.abc import Mapping, Sequence

import structlog

from persona.models.schemas import (
    ALL_SOURCES,
    SOURCE_CONTENT,
    SOURCE_MEMORY,
    SOURCE_WEB,
    ConfidenceHint,
    QueryAnalysis,
    QueryIntent,
    TemporalConstraint,
)

logger = structlog.get_logger(__name__)

_MIN_SOURCE_WEIGHT = 0.05
_SOURCE_FILTER_BOOST = 0.2
_MAX_ENTITIES = 5

_INTENT_PATTERNS: dict[QueryIntent, list[re.Pattern[str]]] = {
    QueryIntent.UNCERTAINTY_TEST: [
        re.compile(r"\b(breakfast|lunch|dinner) (today|this morning|yesterday)\b"),
        re.compile(r"\bhave for (breakfast|lunch|dinner)\b"),
        re.compile(r"\b(password|pin code|bank account|credit card|home address|phone number)\b"),
        re.compile(r"\bwho did you (meet|see|talk to)\b"),
        re.compile(r"\bprivate (conversation|message|life)\b"),
    ],
    QueryIntent.STORY_REQUEST: [
        re.compile(r"\btell me (about )?a time\b"),
        re.compile(r"\bshare (an|a|your) (experience|story)\b"),
        re.compile(r"\bdescribe a (situation|moment|time)\b"),
        re.compile(r"\b(story|anecdote)\b"),
    ],
    QueryIntent.ANALYTICS_QUERY: [
        re.compile(r"\bhow (many|often)\b"),
        re.compile(r"\btop \d+\b"),
        re.compile(r"\b(most|least) (often|frequently|discussed|common|popular)\b"),
        re.compile(r"\b(statistics|stats|count|frequency)\b"),
        re.compile(r"\bpost (about )?most\b"),
    ],
    QueryIntent.CONTENT_SEARCH: [
        re.compile(r"\b(find|search( for)?|show me|list|look up)\b"),
        re.compile(r"\ball (of )?(your )?(posts|articles|videos|tweets|threads)\b"),
    ],
    QueryIntent.RECENT_EVENTS: [
        re.compile(r"\b(recent|recently|latest|lately|newest|currently)\b"),
        re.compile(r"\b(last|past|this) (week|month|few days|couple of days)\b"),
        re.compile(r"\b(today|yesterday|news)\b"),
        re.compile(r"\bbeen up to\b"),
    ],
    QueryIntent.HISTORICAL_TIMELINE: [
        re.compile(r"\b(changed|evolved|evolution|progression|over the years|used to)\b"),
        re.compile(r"\b(back in|in|since) (19|20)\d{2}\b"),
        re.compile(r"\bvs\.? now\b"),
        re.compile(r"\b(timeline|history of)\b"),
    ],
    QueryIntent.PERSONALITY_QUERY: [
        re.compile(r"\bdescribe yourself\b"),
        re.compile(r"\b(your )?(values|personality|character|strengths|weaknesses)\b"),
        re.compile(r"\b(excites?|motivates?|inspires?|passionate about)\b"),
        re.compile(r"\bwhat kind of (person|leader)\b"),
    ],
    QueryIntent.OPINION_QUERY: [
        re.compile(r"\b(think|thoughts|feel|feelings) (about|on)\b"),
        re.compile(r"\b(opinion|stance|take|view|views|position) on\b"),
        re.compile(r"\byour (opinion|stance|take|view)\b"),
        re.compile(r"\bdo you (believe|agree|like|prefer)\b"),
    ],
    QueryIntent.FACTUAL_LOOKUP: [
        re.compile(r"\bwhere (did|do) you (work|study|live|grow up|go to school)\b"),
        re.compile(r"\b(education|educational|degree|university|college|graduated)\b"),
        re.compile(r"\b(which|what) (companies|company|projects|cities|roles|jobs)\b"),
        re.compile(r"\b(worked (at|for)|work history|current role|job title|launched|founded)\b"),
        re.compile(r"\bwhen did you\b"),
    ],
    QueryIntent.CASUAL_CONVERSATION: [
        re.compile(r"^(hi|hey|hello|yo|sup|hiya|howdy)\b"),
        re.compile(r"\bgood (morning|afternoon|evening|night)\b"),
        re.compile(r"\bhow('s| is| are) (it going|you|your day|things)\b"),
        re.compile(r"\bwhat'?s up\b"),
        re.compile(r"^(thanks|thank you|cool|nice|ok|okay)\b"),
    ],
}

_BALANCED = {SOURCE_MEMORY: 1 / 3, SOURCE_CONTENT: 1 / 3, SOURCE_WEB: 1 / 3}

_SOURCE_PROFILES: dict[QueryIntent, dict[str, float]] = {
    QueryIntent.FACTUAL_LOOKUP: {SOURCE_MEMORY: 0.5, SOURCE_CONTENT: 0.3, SOURCE_WEB: 0.2},
    QueryIntent.RECENT_EVENTS: {SOURCE_MEMORY: 0.2, SOURCE_CONTENT: 0.4, SOURCE_WEB: 0.4},
    QueryIntent.HISTORICAL_TIMELINE: {SOURCE_MEMORY: 0.4, SOURCE_CONTENT: 0.5, SOURCE_WEB: 0.1},
    QueryIntent.PERSONALITY_QUERY: {SOURCE_MEMORY: 0.6, SOURCE_CONTENT: 0.3, SOURCE_WEB: 0.1},
    QueryIntent.OPINION_QUERY: {SOURCE_MEMORY: 0.4, SOURCE_CONTENT: 0.4, SOURCE_WEB: 0.2},
    QueryIntent.CONTENT_SEARCH: {SOURCE_MEMORY: 0.2, SOURCE_CONTENT: 0.7, SOURCE_WEB: 0.1},
    QueryIntent.ANALYTICS_QUERY: {SOURCE_MEMORY: 0.2, SOURCE_CONTENT: 0.7, SOURCE_WEB: 0.1},
    QueryIntent.CASUAL_CONVERSATION: _BALANCED,
    QueryIntent.UNCERTAINTY_TEST: {SOURCE_MEMORY: 0.6, SOURCE_CONTENT: 0.3, SOURCE_WEB: 0.1},
    QueryIntent.STORY_REQUEST: {SOURCE_MEMORY: 0.5, SOURCE_CONTENT: 0.4, SOURCE_WEB: 0.1},
}

_CONFIDENCE_HINTS: dict[QueryIntent, ConfidenceHint] = {
    QueryIntent.FACTUAL_LOOKUP: "high",
    QueryIntent.ANALYTICS_QUERY: "high",
    QueryIntent.RECENT_EVENTS: "medium",
    QueryIntent.HISTORICAL_TIMELINE: "medium",
    QueryIntent.PERSONALITY_QUERY: "medium",
    QueryIntent.OPINION_QUERY: "medium",
    QueryIntent.CONTENT_SEARCH: "medium",
    QueryIntent.STORY_REQUEST: "medium",
    QueryIntent.CASUAL_CONVERSATION: "low",
    QueryIntent.UNCERTAINTY_TEST: "low",
}

PLATFORMS: tuple[str, ...] = (
    "linkedin",
    "twitter",
    "facebook",
    "reddit",
    "medium",
    "substack",
    "github",
    "instagram",
)
_PLATFORM_ALIASES = {"x.com": "twitter", "tweet": "twitter", "tweets": "twitter", "ig": "instagram"}
_PLATFORM_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(p) for p in (*PLATFORMS, *_PLATFORM_ALIASES)) + r")\b"
)

_RELATIVE_PERIODS: list[tuple[re.Pattern[str], str, int]] = [
    (re.compile(r"\b(today|this morning)\b"), "today", 1),
    (re.compile(r"\byesterday\b"), "yesterday", 2),
    (re.compile(r"\b(last|past|this) (few days|couple of days)\b"), "last few days", 3),
    (re.compile(r"\b(last|past|this) week\b"), "last week", 7),
    (re.compile(r"\b(last|past|this) month\b"), "last month", 30),
    (re.compile(r"\b(recent|recently|lately|latest)\b"), "recent", 30),
    (re.compile(r"\b(last|past|this) year\b"), "last year", 365),
]
_YEAR_PATTERN = re.compile(r"\b(19[5-9]\d|20\d{2})\b")

_STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be been before being
    below between both but by can could did do does doing down during each few for
    from further had has have having he her here hers him his how i if in into is it
    its just me more most my no nor not now of off on once only or other our out over
    own same she should so some such than that the their them then there these they
    this those through to too under until up very was we were what when where which
    while who whom why will with would you your yours yourself tell show find please
    think thoughts feel opinion take stance last week month year recent recently lately
    latest ever much many really like know things thing something anything
    """.split()
)
_WORD_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z0-9+#.\-]*")


def normalize_query_text(query: str) -> str:
    """Trim, collapse internal whitespace and lowercase."""
    return " ".join(query.split()).lower()


def default_analysis() -> QueryAnalysis:
    """Balanced weighting used for ambiguous or unanalysable queries."""
    return QueryAnalysis(
        intents={QueryIntent.CASUAL_CONVERSATION: 1.0},
        primary_intent=QueryIntent.CASUAL_CONVERSATION,
        source_weights=dict(_BALANCED),
        confidence_hint="low",
    )


def _score_intents(text: str) -> dict[QueryIntent, float]:
    scores: dict[QueryIntent, float] = {}
    for intent, patterns in _INTENT_PATTERNS.items():
        hits = sum(1 for pattern in patterns if pattern.search(text))
        if hits:
            scores[intent] = float(hits)
    total = sum(scores.values())
    if not total:
        return {}
    return {intent: score / total for intent, score in scores.items()}


def _blend_weights(intents: Mapping[QueryIntent, float], boost_content: bool) -> dict[str, float]:
    weights = {source: 0.0 for source in ALL_SOURCES}
    for intent, share in intents.items():
        for source, weight in _SOURCE_PROFILES[intent].items():
            weights[source] += share * weight
    if boost_content:
        weights[SOURCE_CONTENT] += _SOURCE_FILTER_BOOST
    weights = {source: max(weight, _MIN_SOURCE_WEIGHT) for source, weight in weights.items()}
    total = sum(weights.values())
    return {source: weight / total for source, weight in weights.items()}


def _extract_platforms(text: str) -> list[str]:
    found: list[str] = []
    for match in _PLATFORM_PATTERN.finditer(text):
        platform = _PLATFORM_ALIASES.get(match.group(1), match.group(1))
        if platform not in found:
            found.append(platform)
    return found


def _extract_temporal(text: str) -> TemporalConstraint | None:
    for pattern, label, days in _RELATIVE_PERIODS:
        if pattern.search(text):
            return TemporalConstraint(label=label, days=days)
    year = _YEAR_PATTERN.search(text)
    if year:
        return TemporalConstraint(label=year.group(1), year=int(year.group(1)))
    return None


def _extract_entities(query: str) -> list[str]:
    entities: list[str] = []
    seen: set[str] = set()
    for word in _WORD_PATTERN.findall(query):
        cleaned = word.strip(".-")
        key = cleaned.lower()
        if len(key) < 2 or key in _STOPWORDS or key in seen:
            continue
        # Short tokens only count when written as acronyms ("AI", "ML").
        if len(key) < 4 and not cleaned.isupper():
            continue
        seen.add(key)
        entities.append(cleaned)
        if len(entities) >= _MAX_ENTITIES:
            break
    return entities


class QueryAnalyzer:
    """Classifies a query into intents and per-source weights."""

    def analyze(self, query: str) -> QueryAnalysis:
        try:
            return self._analyze(query)
        except Exception:
            logger.exception("query_analyzer.failed", query_preview=str(query)[:80])
            return default_analysis()

    def _analyze(self, query: str) -> QueryAnalysis:
        text = normalize_query_text(query or "")
        if not text:
            return default_analysis()

        intents = _score_intents(text)
        if not intents:
            analysis = default_analysis()
            analysis.entities = _extract_entities(query)
            analysis.source_filter = _extract_platforms(text)
            analysis.temporal = _extract_temporal(text)
            if analysis.source_filter:
                analysis.source_weights = _blend_weights(analysis.intents, boost_content=True)
            return analysis

        # Ties resolve in pattern-table order, most specific intents first.
        primary = max(intents, key=lambda intent: intents[intent])
        source_filter = _extract_platforms(text)

        return QueryAnalysis(
            intents=intents,
            primary_intent=primary,
            source_weights=_blend_weights(intents, boost_content=bool(source_filter)),
            confidence_hint=_CONFIDENCE_HINTS[primary],
            entities=_extract_entities(query),
            source_filter=source_filter,
            temporal=_extract_temporal(text),
            requires_private_info=primary == QueryIntent.UNCERTAINTY_TEST,
        )


def allocate_max_results(
    max_results: int,
    weights: Mapping[str, float],
    sources: Sequence[str],
) -> dict[str, int]:
    """Split ``max_results`` between ``sources`` in proportion to ``weights``.

    Uses largest-remainder rounding; every source gets at least one slot, so
    the allocation can exceed ``max_results`` by up to ``len(sources) - 1``.
    Sources missing from ``weights`` weigh zero unless all of them do, in which
    case the split is even.
    """
    if not sources:
        return {}
    raw = {source: max(float(weights.get(source, 0.0)), 0.0) for source in sources}
    total_weight = sum(raw.values())
    if total_weight <= 0:
        raw = {source: 1.0 for source in sources}
        total_weight = float(len(sources))

    shares = {source: max_results * raw[source] / total_weight for source in sources}
    allocation = {source: int(shares[source]) for source in sources}
    remainder = max_results - sum(allocation.values())
    by_fraction = sorted(sources, key=lambda s: shares[s] - allocation[s], reverse=True)
    for source in by_fraction[: max(remainder, 0)]:
        allocation[source] += 1
    return {source: max(1, count) for source, count in allocation.items()}
