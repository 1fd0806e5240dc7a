"""Shared fakes for the unit tests."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest
from fakeredis import aioredis

from persona.cache.conversation_cache import InMemoryConversationCache
from persona.engine.llm import StepFinish, StreamErrorPart, StreamPart, TextDelta, ToolCallPart
from persona.models.schemas import ContentSearchResult, MemorySearchResult


class ScriptedProvider:
    """LanguageModelProvider replaying one scripted list of parts per step.

    Steps past the end of the script repeat the last one.
    """

    def __init__(self, steps: list[list[StreamPart]], model: str = "test-model", title: str = ""):
        self.model = model
        self._steps = steps
        self._title = title
        self.calls: list[dict] = []

    async def stream_generate(
        self, system_prompt: str, messages: list[dict], tools: list[dict]
    ) -> AsyncIterator[StreamPart]:
        index = min(len(self.calls), len(self._steps) - 1)
        self.calls.append(
            {"system_prompt": system_prompt, "messages": list(messages), "tools": tools}
        )
        for part in self._steps[index]:
            yield part

    async def complete(self, prompt: str, max_tokens: int = 64) -> str:
        return self._title


class FakeMemoryStore:
    def __init__(
        self, memories: list[MemorySearchResult] | None = None, error: Exception | None = None
    ):
        self.memories = memories or []
        self.error = error
        self.calls: list[tuple[str, str, str | None]] = []

    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[MemorySearchResult]:
        self.calls.append((query, user_id, app_id))
        if self.error is not None:
            raise self.error
        return list(self.memories)


class FakeContentStore:
    def __init__(self, contents: list[ContentSearchResult] | None = None):
        self.contents = contents or []

    async def search(
        self, query: str, user_id: str, app_id: str | None = None
    ) -> list[ContentSearchResult]:
        return list(self.contents)


class FakeWebClient:
    def __init__(self, results: list[dict] | None = None, error: Exception | None = None):
        self.results = results or []
        self.error = error
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int = 10) -> list[dict]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.results[:max_results])


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def text_step(*chunks: str) -> list[StreamPart]:
    return [*(TextDelta(c) for c in chunks), StepFinish("stop")]


def tool_step(*calls: tuple[str, str, dict | None]) -> list[StreamPart]:
    parts: list[StreamPart] = [
        ToolCallPart(id=call_id, name=name, arguments=args) for call_id, name, args in calls
    ]
    return [*parts, StepFinish("tool_calls")]


def error_step(message: str = "upstream exploded") -> list[StreamPart]:
    return [TextDelta("partial "), StreamErrorPart(RuntimeError(message))]


def memory(id: str, text: str, score: float, **metadata) -> MemorySearchResult:
    return MemorySearchResult(
        id=id,
        memory=text,
        relevance_score=score,
        metadata=metadata,
        created_at=datetime(2024, 5, 1, tzinfo=UTC),
    )


def content(
    id: int | str, text: str, score: float, source: str = "linkedin"
) -> ContentSearchResult:
    return ContentSearchResult(
        id=id,
        content=text,
        source=source,
        type="post",
        link=f"https://example.com/posts/{id}",
        relevance_score=score,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_cache(fake_clock: FakeClock) -> InMemoryConversationCache:
    return InMemoryConversationCache(ttl_seconds=900, max_history=10, clock=fake_clock)


@pytest.fixture
def fake_redis() -> aioredis.FakeRedis:
    return aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def fakes():
    """Namespace of fake classes and builders for tests that compose their own graph."""

    class _Fakes:
        ScriptedProvider = ScriptedProvider
        FakeMemoryStore = FakeMemoryStore
        FakeContentStore = FakeContentStore
        FakeWebClient = FakeWebClient
        text_step = staticmethod(text_step)
        tool_step = staticmethod(tool_step)
        error_step = staticmethod(error_step)
        memory = staticmethod(memory)
        content = staticmethod(content)

    return _Fakes
