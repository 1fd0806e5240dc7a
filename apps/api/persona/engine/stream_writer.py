"""Ordered event stream to one client connection.

``StreamWriter.emit`` serialises one event as an SSE ``data:`` line with the
``models`` and ``conversationUniqueId`` envelope and hands it to the transport.
Once the transport reports the connection closed, further writes are skipped,
never retried; generation keeps running so its results can still be
persisted.
"""

import asyncio
import json
from typing import Protocol

import structlog

from persona.core.metrics import stream_writes_skipped_total
from persona.models.events import StreamEvent

logger = structlog.get_logger(__name__)

DONE_LINE = "data: [DONE]\n\n"


def sse_line(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class Transport(Protocol):
    @property
    def closed(self) -> bool: ...

    async def send(self, line: str) -> None: ...


class QueueTransport:
    """asyncio.Queue drained by the HTTP response generator.

    ``None`` on the queue marks the end of the stream.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, line: str) -> None:
        if self._closed:
            return
        await self._queue.put(line)

    def close(self) -> None:
        """Mark the client connection gone; queued lines are discarded."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(None)

    async def lines(self):
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line


class ListTransport:
    """Collects lines in memory; closes after ``close_after`` lines when set."""

    def __init__(self, close_after: int | None = None) -> None:
        self.lines: list[str] = []
        self._close_after = close_after
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, line: str) -> None:
        self.lines.append(line)
        if self._close_after is not None and len(self.lines) >= self._close_after:
            self._closed = True

    def close(self) -> None:
        self._closed = True

    @property
    def events(self) -> list[dict]:
        return [json.loads(line[len("data: ") :]) for line in self.lines if line != DONE_LINE]


class StreamWriter:
    def __init__(self, transport: Transport, conversation_id: str | None = None):
        self._transport = transport
        self.conversation_id = conversation_id
        self.skipped = 0

    @property
    def closed(self) -> bool:
        return self._transport.closed

    def for_model(self, model: str) -> "ModelStreamWriter":
        return ModelStreamWriter(self, [model])

    async def write(self, event: StreamEvent, models: list[str]) -> bool:
        """Send one event; returns False when the write was skipped."""
        if self._transport.closed:
            self.skipped += 1
            stream_writes_skipped_total.inc()
            logger.debug(
                "stream_writer.skipped_closed",
                event_type=event.type,
                conversation_id=self.conversation_id,
            )
            return False
        payload = event.model_dump(by_alias=True, exclude_none=True, mode="json")
        payload["models"] = models
        payload["conversationUniqueId"] = self.conversation_id
        await self._transport.send(sse_line(payload))
        return True

    async def done(self) -> None:
        if not self._transport.closed:
            await self._transport.send(DONE_LINE)


class ModelStreamWriter:
    """Writer bound to the model(s) whose task produces the events."""

    def __init__(self, writer: StreamWriter, models: list[str]):
        self._writer = writer
        self.models = models

    @property
    def closed(self) -> bool:
        return self._writer.closed

    @property
    def conversation_id(self) -> str | None:
        return self._writer.conversation_id

    async def emit(self, event: StreamEvent) -> bool:
        return await self._writer.write(event, self.models)
