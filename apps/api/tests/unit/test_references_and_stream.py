"""Unit tests for reference tracking and the SSE stream writer."""

import json

import pytest

from persona.engine.references import ReferenceTracker, to_memory_source
from persona.engine.stream_writer import DONE_LINE, ListTransport, QueueTransport, StreamWriter
from persona.models.events import ConversationTitleEvent, TextEvent
from persona.models.schemas import RetrievalResult


def _ref(id: str, source: str = "content", score: float = 0.7) -> RetrievalResult:
    return RetrievalResult(
        id=id,
        content=f"content {id}",
        relevance_score=score,
        source=source,
        metadata={"platform": "linkedin", "link": f"https://example.com/{id}"},
    )


def test_reference_is_new_only_once() -> None:
    """An identity registered by one tool is not new when another tool returns it."""
    tracker = ReferenceTracker()

    first, first_record = tracker.register([_ref("42"), _ref("7")], tool_name="a", iteration=1)
    second, second_record = tracker.register([_ref("42"), _ref("9")], tool_name="b", iteration=2)

    assert [r.id for r in first] == ["42", "7"]
    assert [r.id for r in second] == ["9"]
    assert second_record.new_reference_ids == {("9", "content")}
    assert tracker.seen == {("42", "content"), ("7", "content"), ("9", "content")}


def test_duplicates_within_one_batch_count_once() -> None:
    """The same identity twice in one tool result is new only once."""
    tracker = ReferenceTracker()

    new, _ = tracker.register([_ref("1"), _ref("1")], tool_name="a", iteration=1)

    assert len(new) == 1


def test_same_id_different_source_is_distinct() -> None:
    """Identity includes the source."""
    tracker = ReferenceTracker()

    new, _ = tracker.register([_ref("1", "memory"), _ref("1", "web")], tool_name="a", iteration=1)

    assert len(new) == 2


def test_summary_counts() -> None:
    """The reference summary reports totals, this round and the per-tool breakdown."""
    tracker = ReferenceTracker()
    tracker.register([_ref("1"), _ref("2")], tool_name="webSearch", iteration=1)
    _, record = tracker.register(
        [_ref("2"), _ref("3")], tool_name="personaMemorySearch", iteration=2
    )

    summary = tracker.summary(record)

    assert summary.total_unique == 3
    assert summary.total_sent == 3
    assert summary.tool_execution_number == 2
    assert summary.new_in_this_round == 1
    assert summary.tool_breakdown == {"webSearch": 2, "personaMemorySearch": 1}


def test_memory_source_uses_platform_and_flags_new() -> None:
    """Client-facing sources carry the platform, tool name and the new flag."""
    source = to_memory_source(_ref("42"), "personaMemorySearch")

    assert source.source == "linkedin"
    assert source.tool_name == "personaMemorySearch"
    assert source.is_new_reference is True


@pytest.mark.asyncio
async def test_writer_serialises_events_with_envelope() -> None:
    """Each event becomes one camelCase SSE line tagged with models and conversation."""
    transport = ListTransport()
    writer = StreamWriter(transport, conversation_id="conv-1")

    await writer.for_model("gpt-4.1-mini").emit(ConversationTitleEvent(title="Remote work"))
    await writer.done()

    assert transport.lines[-1] == DONE_LINE
    assert transport.lines[0].startswith("data: ") and transport.lines[0].endswith("\n\n")
    assert transport.events == [
        {
            "type": "conversation-title",
            "title": "Remote work",
            "models": ["gpt-4.1-mini"],
            "conversationUniqueId": "conv-1",
        }
    ]


@pytest.mark.asyncio
async def test_writes_after_close_are_skipped() -> None:
    """Once the transport reports closed, writes are dropped and counted."""
    transport = ListTransport(close_after=1)
    writer = StreamWriter(transport, conversation_id="conv-1")
    model_writer = writer.for_model("m")

    assert await model_writer.emit(TextEvent(content="a")) is True
    assert await model_writer.emit(TextEvent(content="b")) is False
    await writer.done()

    assert len(transport.lines) == 1
    assert writer.skipped == 1


@pytest.mark.asyncio
async def test_queue_transport_drains_in_order_until_finished() -> None:
    """The HTTP side reads lines in write order and stops at finish."""
    transport = QueueTransport()
    writer = StreamWriter(transport, conversation_id="c")
    await writer.for_model("m").emit(TextEvent(content="hello"))
    await writer.done()
    transport.finish()

    lines = [line async for line in transport.lines()]

    assert json.loads(lines[0][len("data: ") :])["content"] == "hello"
    assert lines[1] == DONE_LINE


@pytest.mark.asyncio
async def test_queue_transport_close_discards_pending_lines() -> None:
    """Closing on disconnect drops queued lines and refuses new ones."""
    transport = QueueTransport()
    await transport.send("data: 1\n\n")

    transport.close()
    await transport.send("data: 2\n\n")
    transport.finish()

    assert transport.closed is True
    assert [line async for line in transport.lines()] == []
