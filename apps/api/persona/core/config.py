from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=["../../.env", ".env"], extra="ignore")

    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    OPENAI_API_KEY: str | None = None
    EXA_API_KEY: str | None = None

    MEM0_API_KEY: str | None = None
    MEM0_BASE_URL: str = "https://api.mem0.ai"

    REDIS_URL: str = "redis://localhost:6379/0"

    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # === Models ===
    DEFAULT_MODEL: str = "gpt-4.1-mini"
    TITLE_MODEL: str = "gpt-4.1-nano"
    AVAILABLE_MODELS: list[str] = [
        "gpt-4.1",
        "gpt-4.1-mini",
        "gpt-4.1-nano",
        "gpt-4o",
        "gpt-4o-mini",
    ]
    LLM_MAX_RETRIES: int = Field(default=3, ge=0, le=10)

    # === Conversation cache (web search results + query history) ===
    CONVERSATION_CACHE_BACKEND: str = Field(
        default="memory",
        description="'memory' keeps the cache in-process, 'redis' shares it across instances.",
    )
    WEB_SEARCH_CACHE_TTL: int = Field(
        default=900, ge=1, le=86400, description="Lifetime of a cached web search result"
    )
    WEB_SEARCH_HISTORY_MAX: int = Field(
        default=10, ge=1, le=100, description="Queries remembered per conversation"
    )
    CONVERSATION_CACHE_MAX_CONVERSATIONS: int = 10000

    # === Retrieval ===
    RETRIEVAL_MAX_RESULTS: int = Field(default=20, ge=1, le=200)
    RETRIEVAL_RESULT_CAP: int = Field(
        default=30, ge=1, le=500, description="Hard cap on merged results per retrieval"
    )
    MEMORY_MIN_SCORE: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Memories at or below this relevance score are dropped.",
    )
    SOURCE_TIMEOUT: float = Field(
        default=8.0,
        ge=0.5,
        le=120.0,
        description="Per-source timeout for retrieval calls (seconds).",
    )
    WEB_SEARCH_TIMEOUT: float = Field(
        default=15.0,
        ge=0.5,
        le=120.0,
        description="Timeout for a single outbound web search call (seconds).",
    )
    URL_FETCH_TIMEOUT: float = Field(default=10.0, ge=0.5, le=120.0)
    URL_FETCH_MAX_REDIRECTS: int = Field(default=5, ge=0, le=10)
    URL_FETCH_MAX_BYTES: int = Field(default=2_000_000, ge=1024, le=20_000_000)

    # === Generation loop ===
    DEFAULT_MAX_STEPS: int = Field(default=6, ge=1, le=50)
    DEEP_MODE_MAX_ROUNDS: int = Field(default=10, ge=1, le=50)
    DEEP_MODE_MAX_ITEMS_PER_SOURCE: int = Field(default=10, ge=1, le=40)

    # === Outbound limits (requests per second) and circuit breakers ===
    EXA_RATE_LIMIT: float = Field(default=5.0, ge=0.1, le=1000.0)
    MEM0_RATE_LIMIT: float = Field(default=10.0, ge=0.1, le=1000.0)
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1, le=100)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = Field(
        default=60, ge=5, le=600, description="Seconds an open breaker waits before a probe."
    )

    @field_validator("CONVERSATION_CACHE_BACKEND")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("CONVERSATION_CACHE_BACKEND must be 'memory' or 'redis'")
        return v

    @field_validator("DEFAULT_MODEL", "TITLE_MODEL")
    @classmethod
    def validate_model_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("model names must not be empty")
        return v

    def max_steps_for(self, deep_mode: bool) -> int:
        """Step budget for one generation session.

        Deep mode allows two steps per research round plus planning and
        synthesis, and never less than 8.
        """
        if deep_mode:
            return max(self.DEEP_MODE_MAX_ROUNDS * 2 + 2, 8)
        return self.DEFAULT_MAX_STEPS


class CacheKeys:
    """Redis key prefixes for conversation-scoped state.

    Format: <category>:<conversation_id>[:<suffix>]
    """

    WEB_SEARCH_RESULTS = "websearch:results"
    WEB_SEARCH_HISTORY = "websearch:history"


settings = Settings()
