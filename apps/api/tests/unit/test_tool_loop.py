"""Unit tests for the step-bounded model/tool loop."""

import asyncio
import json

import pytest

from persona.core.error_reporter import RecordingErrorReporter
from persona.engine.loop import STREAM_ERROR_MESSAGE, LoopState, ToolOrchestrationLoop
from persona.engine.progress import DeepThinkNotifier
from persona.engine.stream_writer import ListTransport, StreamWriter
from persona.engine.tools import Tool, ToolContext, ToolOutput, ToolRegistry
from persona.models.schemas import RetrievalResult

MESSAGES = [{"role": "user", "content": "What do you think about remote work?"}]


def _loop(provider, tools, *, max_steps=6, deep=False, reporter=None):
    transport = ListTransport()
    writer = StreamWriter(transport, conversation_id="conv-1").for_model("m")
    ctx = ToolContext(
        conversation_id="conv-1",
        user_id="user-1",
        app_id=None,
        model="m",
        writer=writer,
        progress=DeepThinkNotifier(writer, deep),
    )
    loop = ToolOrchestrationLoop(
        provider, ToolRegistry(tools), writer, ctx, max_steps=max_steps, error_reporter=reporter
    )
    return loop, transport


def _reference_tool(name: str, ids: list[str]) -> Tool:
    async def handler(arguments, ctx) -> ToolOutput:
        refs = [
            RetrievalResult(id=i, content=f"post {i}", relevance_score=0.8, source="content")
            for i in ids
        ]
        return ToolOutput(
            output={"items": [r.id for r in refs], "count": len(refs)}, references=refs
        )

    return Tool(
        name=name,
        description=f"{name} lookup",
        parameters={"type": "object", "properties": {}},
        handler=handler,
        reference_key="items",
    )


def _types(transport: ListTransport) -> list[str]:
    return [event["type"] for event in transport.events]


@pytest.mark.asyncio
async def test_step_budget_ends_loop_as_normal_finish(fakes) -> None:
    """A model that keeps calling tools is stopped after max_steps provider calls."""
    provider = fakes.ScriptedProvider([fakes.tool_step(("c1", "lookup", {}))])
    loop, _ = _loop(provider, [_reference_tool("lookup", [])], max_steps=3)

    outcome = await loop.run("system", MESSAGES)

    assert len(provider.calls) == 3
    assert outcome.state == LoopState.FINISHED
    assert outcome.finish_reason == "max_steps"
    assert outcome.steps == 3


@pytest.mark.asyncio
async def test_answer_without_tools_finishes_after_one_step(fakes) -> None:
    """Plain text answers stream as text events and finish immediately."""
    provider = fakes.ScriptedProvider([fakes.text_step("Remote ", "work ", "works.")])
    loop, transport = _loop(provider, [])

    outcome = await loop.run("system", MESSAGES)

    assert outcome.state == LoopState.FINISHED
    assert outcome.finish_reason == "stop"
    assert outcome.text == "Remote work works."
    assert [e["content"] for e in transport.events] == ["Remote ", "work ", "works."]


@pytest.mark.asyncio
async def test_references_are_new_once_across_tools(fakes) -> None:
    """An id returned by a second tool is not sent to the client again."""
    provider = fakes.ScriptedProvider(
        [
            fakes.tool_step(("c1", "first", {})),
            fakes.tool_step(("c2", "second", {})),
            fakes.text_step("done"),
        ]
    )
    loop, transport = _loop(
        provider, [_reference_tool("first", ["42", "7"]), _reference_tool("second", ["42", "9"])]
    )

    outcome = await loop.run("system", MESSAGES)

    sources = [e for e in transport.events if e["type"] == "memory-sources"]
    assert [[s["id"] for s in e["memorySources"]] for e in sources] == [["42", "7"], ["9"]]
    assert sources[1]["referenceSummary"]["totalUnique"] == 3
    assert sources[1]["referenceSummary"]["newInThisRound"] == 1
    assert [r.id for r in outcome.references] == ["42", "7", "9"]
    assert outcome.tool_results[1]["result"]["newReferencesCount"] == 1


@pytest.mark.asyncio
async def test_tool_events_precede_next_step_text(fakes) -> None:
    """memory-sources, then tool-results, are written before the answer text."""
    provider = fakes.ScriptedProvider(
        [fakes.tool_step(("c1", "first", {})), fakes.text_step("answer")]
    )
    loop, transport = _loop(provider, [_reference_tool("first", ["1"])])

    await loop.run("system", MESSAGES)

    assert _types(transport) == ["memory-sources", "tool-results", "text"]


@pytest.mark.asyncio
async def test_tool_results_event_strips_references(fakes) -> None:
    """The client summary drops the raw reference list and adds a summary line."""
    provider = fakes.ScriptedProvider(
        [fakes.tool_step(("c1", "first", {})), fakes.text_step("answer")]
    )
    loop, transport = _loop(provider, [_reference_tool("first", ["1", "2"])])

    await loop.run("system", MESSAGES)

    event = next(e for e in transport.events if e["type"] == "tool-results")
    assert event["toolResults"][0]["toolName"] == "first"
    assert event["toolResults"][0]["result"] == {
        "count": 2,
        "summary": "Found 2 items",
        "newReferencesCount": 2,
    }


@pytest.mark.asyncio
async def test_tool_output_is_fed_back_to_the_model(fakes) -> None:
    """The next step sees the assistant tool call and the tool output in history."""
    provider = fakes.ScriptedProvider(
        [fakes.tool_step(("c1", "first", {"query": "x"})), fakes.text_step("answer")]
    )
    loop, _ = _loop(provider, [_reference_tool("first", ["1"])])

    await loop.run("system", MESSAGES)

    history = provider.calls[1]["messages"]
    assert history[0] == MESSAGES[0]
    assert history[1]["role"] == "assistant"
    assert history[1]["tool_calls"][0]["function"] == {
        "name": "first",
        "arguments": json.dumps({"query": "x"}),
    }
    assert history[2]["role"] == "tool"
    assert history[2]["tool_call_id"] == "c1"
    assert json.loads(history[2]["content"])["items"] == ["1"]


@pytest.mark.asyncio
async def test_unknown_tool_returns_error_payload(fakes) -> None:
    """Calling a tool that does not exist is reported back without ending the loop."""
    provider = fakes.ScriptedProvider(
        [fakes.tool_step(("c1", "nope", {})), fakes.text_step("sorry")]
    )
    loop, transport = _loop(provider, [])

    outcome = await loop.run("system", MESSAGES)

    assert outcome.state == LoopState.FINISHED
    result = outcome.tool_results[0]["result"]
    assert result["error"] == "Unknown tool: nope"
    assert result["category"] == "user_input_error"
    assert result["summary"] == "Unknown tool: nope"
    assert json.loads(provider.calls[1]["messages"][-1]["content"])["tool"] == "nope"
    assert "error" not in _types(transport)


@pytest.mark.asyncio
async def test_malformed_arguments_and_crashing_tools_become_errors(fakes) -> None:
    """Unparseable arguments and handler exceptions are both tool-level errors."""

    async def crash(arguments, ctx) -> ToolOutput:
        raise RuntimeError("disk full")

    crashing = Tool("crash", "always fails", {"type": "object"}, crash)
    provider = fakes.ScriptedProvider(
        [
            fakes.tool_step(("c1", "first", None), ("c2", "crash", {})),
            fakes.text_step("ok"),
        ]
    )
    loop, _ = _loop(provider, [_reference_tool("first", ["1"]), crashing])

    outcome = await loop.run("system", MESSAGES)

    first, second = (r["result"] for r in outcome.tool_results)
    assert first["error"] == "Tool arguments must be a JSON object"
    assert second["category"] == "runtime_error"
    assert "disk full" in second["error"]
    assert outcome.references == []


@pytest.mark.asyncio
async def test_calls_in_one_step_run_concurrently(fakes) -> None:
    """Tools of one step execute together; results stay in call order."""
    released = asyncio.Event()

    async def waiter(arguments, ctx) -> ToolOutput:
        await released.wait()
        return ToolOutput(output={"who": "waiter"})

    async def releaser(arguments, ctx) -> ToolOutput:
        released.set()
        return ToolOutput(output={"who": "releaser"})

    provider = fakes.ScriptedProvider(
        [
            fakes.tool_step(("c1", "waiter", {}), ("c2", "releaser", {})),
            fakes.text_step("ok"),
        ]
    )
    loop, _ = _loop(
        provider,
        [
            Tool("waiter", "", {"type": "object"}, waiter),
            Tool("releaser", "", {"type": "object"}, releaser),
        ],
    )

    outcome = await asyncio.wait_for(loop.run("system", MESSAGES), timeout=1)

    assert [r["toolName"] for r in outcome.tool_results] == ["waiter", "releaser"]


@pytest.mark.asyncio
async def test_stream_error_ends_run_with_error_event(fakes) -> None:
    """A provider failure is reported and surfaced as an inline error event."""
    reporter = RecordingErrorReporter()
    provider = fakes.ScriptedProvider([fakes.error_step()])
    loop, transport = _loop(provider, [], reporter=reporter)

    outcome = await loop.run("system", MESSAGES)

    assert outcome.state == LoopState.ERRORED
    assert outcome.text == "partial "
    assert transport.events[-1]["type"] == "error"
    assert transport.events[-1]["error"] == STREAM_ERROR_MESSAGE
    assert transport.events[-1]["code"] == "stream_error"
    assert reporter.reports[0][1]["component"] == "tool_loop"
    assert reporter.reports[0][1]["conversation_id"] == "conv-1"


@pytest.mark.asyncio
async def test_deep_mode_announces_reflection_once(fakes) -> None:
    """The first text delta in deep mode is preceded by a single reflection update."""
    provider = fakes.ScriptedProvider([fakes.text_step("a", "b")])
    loop, transport = _loop(provider, [], deep=True)

    await loop.run("system", MESSAGES)

    assert _types(transport) == ["deep-think-progress", "text", "text"]
    progress = transport.events[0]["progress"]
    assert progress["stage"] == "reflection"
    assert progress["iteration"] == 1


def test_step_budget_must_be_positive(fakes) -> None:
    """A loop without at least one step is a programming error."""
    with pytest.raises(ValueError):
        _loop(fakes.ScriptedProvider([fakes.text_step("x")]), [], max_steps=0)
