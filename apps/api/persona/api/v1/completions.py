import asyncio

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from persona.core.container import get_completion_engine
from persona.core.errors import ModelUnavailableError
from persona.engine.completion import CompletionEngine
from persona.engine.stream_writer import QueueTransport, StreamWriter
from persona.models.schemas import CompletionRequest

logger = structlog.get_logger(__name__)

router = APIRouter()

# Strong references so running generations are not garbage collected after
# their client has gone away.
_running: set[asyncio.Task] = set()


async def _generate(
    engine: CompletionEngine, request: CompletionRequest, transport: QueueTransport
) -> None:
    try:
        await engine.create_completion(request, StreamWriter(transport))
    except Exception:
        logger.exception("completions.generation_failed")
    finally:
        transport.finish()


@router.post("", response_class=StreamingResponse)
async def create_completion(
    request: CompletionRequest,
    engine: CompletionEngine = Depends(get_completion_engine),
):
    """
    Stream a completion via SSE.

    Unknown models are rejected with 400 before the stream opens. Generation
    runs as a background task: when the client disconnects, pending events
    are dropped but the task still finishes and persists its result.
    """
    try:
        engine.resolve_models(request)
    except ModelUnavailableError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(
        "completions.request",
        models=request.models,
        deep_mode=request.deep_mode,
        conversation_id=request.conversation_id or request.new_conversation_id,
        query_preview=request.last_user_message[:80],
    )

    transport = QueueTransport()
    task = asyncio.create_task(_generate(engine, request, transport))
    _running.add(task)
    task.add_done_callback(_running.discard)

    async def event_generator():
        try:
            async for line in transport.lines():
                yield line
        finally:
            if not task.done():
                logger.info("completions.client_disconnected")
            transport.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
