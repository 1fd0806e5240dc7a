"""Language model providers.

A provider runs ONE generation step: it streams text deltas and tool calls
for the given history and stops at the model's finish. The tool loop drives
steps, executes tools and appends their results to the history itself.
"""

import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from openai import AsyncOpenAI

from persona.core.errors import ModelUnavailableError
from persona.core.openai_client import get_openai_client

logger = structlog.get_logger(__name__)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallPart:
    id: str
    name: str
    arguments: dict[str, Any] | None
    raw_arguments: str = ""


@dataclass
class StepFinish:
    finish_reason: str


@dataclass
class StreamErrorPart:
    error: BaseException


StreamPart = TextDelta | ToolCallPart | StepFinish | StreamErrorPart


class LanguageModelProvider(Protocol):
    model: str

    def stream_generate(
        self, system_prompt: str, messages: list[dict], tools: list[dict]
    ) -> AsyncIterator[StreamPart]: ...

    async def complete(self, prompt: str, max_tokens: int = 64) -> str: ...


def parse_tool_arguments(raw: str) -> dict[str, Any] | None:
    """Decode a tool call's JSON arguments; None when they are not a JSON object."""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class OpenAIProvider:
    """Streams chat completions; tool call deltas are accumulated by index."""

    def __init__(self, model: str, client: AsyncOpenAI | None = None, temperature: float = 0.7):
        self.model = model
        self._client = client
        self._temperature = temperature

    @property
    def client(self) -> AsyncOpenAI:
        return self._client or get_openai_client()

    async def stream_generate(
        self, system_prompt: str, messages: list[dict], tools: list[dict]
    ) -> AsyncIterator[StreamPart]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": self._temperature,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        pending: dict[int, _PendingToolCall] = {}
        finish_reason = "stop"
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    yield TextDelta(delta.content)
                for tc in (delta.tool_calls if delta is not None else None) or []:
                    call = pending.setdefault(tc.index, _PendingToolCall())
                    if tc.id:
                        call.id = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            call.name = tc.function.name
                        if tc.function.arguments:
                            call.arguments.append(tc.function.arguments)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as exc:
            logger.error("llm.stream_failed", model=self.model, error=str(exc))
            yield StreamErrorPart(exc)
            return

        for index in sorted(pending):
            call = pending[index]
            raw = "".join(call.arguments)
            yield ToolCallPart(
                id=call.id or f"call_{index}",
                name=call.name,
                arguments=parse_tool_arguments(raw),
                raw_arguments=raw,
            )
        yield StepFinish(finish_reason)

    async def complete(self, prompt: str, max_tokens: int = 64) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.3,
            max_tokens=max_tokens,
        )
        return (response.choices[0].message.content or "").strip()


class ProviderRegistry:
    """Maps model names to providers."""

    def __init__(self, providers: Mapping[str, LanguageModelProvider]):
        self._providers = dict(providers)

    @classmethod
    def for_openai(cls, models: list[str], client: AsyncOpenAI | None = None) -> "ProviderRegistry":
        return cls({name: OpenAIProvider(name, client) for name in models})

    @property
    def models(self) -> list[str]:
        return list(self._providers)

    def resolve(self, model: str) -> LanguageModelProvider:
        try:
            return self._providers[model]
        except KeyError:
            raise ModelUnavailableError(model) from None
