"""Pydantic schemas shared by retrieval, generation and the HTTP routes.

Wire-facing models use camelCase aliases; Python code uses snake_case field
names. The routes declare no models of their own.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ConfidenceLevel = Literal["high", "medium", "low", "none"]
ConfidenceHint = Literal["high", "medium", "low"]

SOURCE_MEMORY = "memory"
SOURCE_CONTENT = "content"
SOURCE_WEB = "web"
ALL_SOURCES: tuple[str, ...] = (SOURCE_MEMORY, SOURCE_CONTENT, SOURCE_WEB)


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase on input, dumps camelCase with by_alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Query analysis
# ---------------------------------------------------------------------------


class QueryIntent(str, Enum):
    FACTUAL_LOOKUP = "factual_lookup"
    RECENT_EVENTS = "recent_events"
    HISTORICAL_TIMELINE = "historical_timeline"
    PERSONALITY_QUERY = "personality_query"
    OPINION_QUERY = "opinion_query"
    CONTENT_SEARCH = "content_search"
    ANALYTICS_QUERY = "analytics_query"
    CASUAL_CONVERSATION = "casual_conversation"
    UNCERTAINTY_TEST = "uncertainty_test"
    STORY_REQUEST = "story_request"


class TemporalConstraint(CamelModel):
    label: str
    days: int | None = None
    year: int | None = None


class QueryAnalysis(CamelModel):
    intents: dict[QueryIntent, float]
    primary_intent: QueryIntent
    source_weights: dict[str, float]
    confidence_hint: ConfidenceHint
    entities: list[str] = Field(default_factory=list)
    source_filter: list[str] = Field(default_factory=list)
    temporal: TemporalConstraint | None = None
    requires_private_info: bool = False


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class RetrievalRequest(CamelModel):
    query: str = Field(..., max_length=10000)
    user_id: str
    app_id: str | None = None
    conversation_id: str | None = None
    max_results: int = Field(default=20, ge=1, le=200)
    weights: dict[str, float] | None = None
    # Restricts which sources run; None means every registered source.
    sources: list[str] | None = None


class MemorySearchResult(CamelModel):
    id: str
    memory: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    relevance_score: float = 0.0
    source: Literal["mem0", "chroma"] = "mem0"


class ContentSearchResult(CamelModel):
    id: int | str
    content: str
    source: str
    type: str | None = None
    link: str | None = None
    created_at: datetime | None = None
    relevance_score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrievalResult(CamelModel):
    id: str
    content: str
    relevance_score: float
    source: str
    type: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("relevance_score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> float:
        try:
            score = float(v)
        except (TypeError, ValueError):
            return 0.0
        if score != score:  # NaN
            return 0.0
        return min(1.0, max(0.0, score))

    @property
    def identity(self) -> tuple[str, str]:
        return (self.id, self.source)


class RetrievalResponse(CamelModel):
    query: str
    results: list[RetrievalResult] = Field(default_factory=list)
    total_results: int = 0
    confidence_level: ConfidenceLevel = "none"
    sources_used: list[str] = Field(default_factory=list)
    processing_time: float = 0.0
    query_analysis: QueryAnalysis | None = None


# ---------------------------------------------------------------------------
# Conversation cache
# ---------------------------------------------------------------------------


class CacheEntry(BaseModel):
    normalized_query: str
    timestamp: float
    result: dict[str, Any]


class QueryHistoryEntry(BaseModel):
    normalized_query: str
    display_text: str


# ---------------------------------------------------------------------------
# Completions
# ---------------------------------------------------------------------------


class ChatMessage(CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class PersonaContext(CamelModel):
    app_id: str | None = None
    name: str | None = None
    description: str | None = None
    personality: str | None = None
    owner_user_id: str | None = None
    owner_name: str | None = None
    is_me: bool = False


class CompletionRequest(CamelModel):
    messages: list[ChatMessage] = Field(..., min_length=1)
    models: list[str] = Field(default_factory=list)
    conversation_id: str | None = None
    new_conversation_id: str | None = None
    message_id: str | None = None
    deep_mode: bool = False
    persona: PersonaContext | None = None
    user_id: str | None = None
    is_anonymous: bool = False

    @field_validator("messages")
    @classmethod
    def validate_last_message(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if v[-1].role != "user":
            raise ValueError("the last message must come from the user")
        if not v[-1].content.strip():
            raise ValueError("the last message must not be empty")
        return v

    @property
    def last_user_message(self) -> str:
        return self.messages[-1].content
