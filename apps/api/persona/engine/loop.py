"""Step-bounded model/tool loop.

One ``run`` drives the model until it answers without calling a tool or the
step budget is spent:

    IDLE -> STREAMING -> (AWAITING_TOOL_RESULT -> STREAMING)* -> FINISHED
                    any -> ERRORED

Per step, text deltas are forwarded as they arrive. Tool calls of the step
run concurrently; their results are then handled in call order: new
references first (``memory-sources``), then the tool summary
(``tool-results``). Both are written before the next step starts, so the
text produced from a tool's output always follows that tool's events.

Hitting the step budget is a normal finish with ``finish_reason="max_steps"``.
Provider failures end the run ERRORED with an inline ``error`` event.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from persona.core.error_reporter import ErrorReporter, StructlogErrorReporter
from persona.core.errors import StreamGenerationError
from persona.core.metrics import loop_outcomes_total, loop_steps_total
from persona.engine.llm import (
    LanguageModelProvider,
    StepFinish,
    StreamErrorPart,
    TextDelta,
    ToolCallPart,
)
from persona.engine.progress import DeepThinkNotifier
from persona.engine.references import ReferenceTracker, ToolExecutionRecord, to_memory_source
from persona.engine.stream_writer import ModelStreamWriter
from persona.engine.tools import ToolContext, ToolOutput, ToolRegistry
from persona.models.events import (
    ErrorEvent,
    MemorySourcesEvent,
    TextEvent,
    ToolResultsEvent,
    ToolResultSummary,
)
from persona.models.schemas import RetrievalResult

logger = structlog.get_logger(__name__)

STREAM_ERROR_MESSAGE = "I encountered an error generating the response. Please try again."


class LoopState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    FINISHED = "finished"
    ERRORED = "errored"


@dataclass
class LoopOutcome:
    state: LoopState
    text: str = ""
    steps: int = 0
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    references: list[RetrievalResult] = field(default_factory=list)
    executions: list[ToolExecutionRecord] = field(default_factory=list)
    finish_reason: str | None = None
    error: BaseException | None = None


class ToolOrchestrationLoop:
    def __init__(
        self,
        provider: LanguageModelProvider,
        registry: ToolRegistry,
        writer: ModelStreamWriter,
        context: ToolContext,
        *,
        max_steps: int,
        tracker: ReferenceTracker | None = None,
        error_reporter: ErrorReporter | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self._provider = provider
        self._registry = registry
        self._writer = writer
        self._ctx = context
        self._max_steps = max_steps
        self.tracker = tracker or ReferenceTracker()
        self._error_reporter = error_reporter or StructlogErrorReporter()
        self.state = LoopState.IDLE

    @property
    def _progress(self) -> DeepThinkNotifier:
        return self._ctx.progress

    @property
    def _mode(self) -> str:
        return "deep" if self._progress.enabled else "default"

    async def run(self, system_prompt: str, messages: list[dict]) -> LoopOutcome:
        history = [dict(m) for m in messages]
        outcome = LoopOutcome(state=LoopState.IDLE)
        text_parts: list[str] = []
        tools = self._registry.openai_schemas()

        try:
            while True:
                outcome.steps += 1
                loop_steps_total.labels(mode=self._mode).inc()
                self.state = LoopState.STREAMING
                self._progress.next_iteration()

                step_text, calls, finish_reason = await self._stream_step(
                    system_prompt, history, tools, text_parts
                )
                outcome.finish_reason = finish_reason

                if not calls:
                    self.state = LoopState.FINISHED
                    break

                self.state = LoopState.AWAITING_TOOL_RESULT
                await self._run_tools(calls, step_text, history, outcome)

                if outcome.steps >= self._max_steps:
                    logger.info(
                        "loop.max_steps_reached",
                        model=self._ctx.model,
                        steps=outcome.steps,
                        conversation_id=self._ctx.conversation_id,
                    )
                    outcome.finish_reason = "max_steps"
                    self.state = LoopState.FINISHED
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.state = LoopState.ERRORED
            outcome.error = exc
            outcome.finish_reason = "error"
            logger.error(
                "loop.stream_error",
                model=self._ctx.model,
                step=outcome.steps,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._error_reporter.report(
                exc,
                {
                    "component": "tool_loop",
                    "model": self._ctx.model,
                    "conversation_id": self._ctx.conversation_id,
                    "step": outcome.steps,
                },
            )
            await self._writer.emit(ErrorEvent(error=STREAM_ERROR_MESSAGE, code="stream_error"))

        outcome.state = self.state
        outcome.text = "".join(text_parts)
        outcome.references = self.tracker.emitted
        outcome.executions = self.tracker.executions
        loop_outcomes_total.labels(
            state=outcome.state.value, finish_reason=outcome.finish_reason or "unknown"
        ).inc()
        logger.info(
            "loop.done",
            model=self._ctx.model,
            state=outcome.state.value,
            steps=outcome.steps,
            finish_reason=outcome.finish_reason,
            response_length=len(outcome.text),
            references=len(outcome.references),
        )
        return outcome

    async def _stream_step(
        self,
        system_prompt: str,
        history: list[dict],
        tools: list[dict],
        text_parts: list[str],
    ) -> tuple[str, list[ToolCallPart], str]:
        step_text: list[str] = []
        calls: list[ToolCallPart] = []
        finish_reason = "stop"

        async for part in self._provider.stream_generate(system_prompt, history, tools):
            if isinstance(part, TextDelta):
                if not part.text:
                    continue
                await self._progress.reflect_once()
                step_text.append(part.text)
                text_parts.append(part.text)
                await self._writer.emit(TextEvent(content=part.text))
            elif isinstance(part, ToolCallPart):
                calls.append(part)
            elif isinstance(part, StepFinish):
                finish_reason = part.finish_reason
            elif isinstance(part, StreamErrorPart):
                raise StreamGenerationError(str(part.error)) from part.error

        return "".join(step_text), calls, finish_reason

    async def _run_tools(
        self,
        calls: list[ToolCallPart],
        step_text: str,
        history: list[dict],
        outcome: LoopOutcome,
    ) -> None:
        results = await self._registry.execute_batch(
            [(call.name, call.arguments) for call in calls], self._ctx
        )

        history.append(
            {
                "role": "assistant",
                "content": step_text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": call.raw_arguments or json.dumps(call.arguments or {}),
                        },
                    }
                    for call in calls
                ],
            }
        )

        for call, result in zip(calls, results, strict=True):
            new_count = await self._publish_references(call.name, result)
            summary = self._client_summary(call.name, result, new_count)
            outcome.tool_results.append({"toolName": call.name, "result": summary})
            await self._writer.emit(
                ToolResultsEvent(
                    tool_results=[ToolResultSummary(tool_name=call.name, result=summary)]
                )
            )
            history.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(result.output, default=str),
                }
            )

    async def _publish_references(self, tool_name: str, result: ToolOutput) -> int:
        if not result.references:
            return 0
        new, record = self.tracker.register(
            result.references,
            tool_name=tool_name,
            iteration=len(self.tracker.executions) + 1,
        )
        if new:
            await self._writer.emit(
                MemorySourcesEvent(
                    memory_sources=[to_memory_source(ref, tool_name) for ref in new],
                    reference_summary=self.tracker.summary(record),
                )
            )
        logger.debug(
            "loop.references_registered",
            tool=tool_name,
            received=len(result.references),
            new=len(new),
            total_unique=len(self.tracker.seen),
        )
        return len(new)

    def _client_summary(self, tool_name: str, result: ToolOutput, new_count: int) -> dict:
        tool = self._registry.get(tool_name)
        reference_key = tool.reference_key if tool is not None else None
        summary = {k: v for k, v in result.output.items() if k != reference_key}
        if result.is_error:
            summary.setdefault("summary", str(result.output.get("error", "Tool failed")))
        else:
            summary["summary"] = result.summary or f"Found {len(result.references)} items"
        summary["newReferencesCount"] = new_count
        return summary
