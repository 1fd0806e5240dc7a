"""Shared OpenAI client singleton.

One AsyncOpenAI client (and its httpx connection pool) per worker process,
reused by every model provider.
"""

from openai import AsyncOpenAI

from persona.core.config import settings

_openai_client: AsyncOpenAI | None = None


def get_openai_client() -> AsyncOpenAI:
    """Return (or lazily create) the module-level AsyncOpenAI client."""
    global _openai_client
    if _openai_client is None:
        _openai_client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            max_retries=settings.LLM_MAX_RETRIES,
        )
    return _openai_client
