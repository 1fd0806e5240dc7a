import structlog
from fastapi import APIRouter, Depends

from persona.core.container import get_retrieval_orchestrator
from persona.models.schemas import RetrievalRequest, RetrievalResponse
from persona.retrieval.orchestrator import RetrievalOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("", response_model=RetrievalResponse)
async def retrieve(
    request: RetrievalRequest,
    orchestrator: RetrievalOrchestrator = Depends(get_retrieval_orchestrator),
) -> RetrievalResponse:
    """Search every knowledge source for the query and return the merged ranking."""
    logger.info(
        "retrieval.request",
        user_id=request.user_id,
        conversation_id=request.conversation_id,
        query_preview=request.query[:80],
    )
    return await orchestrator.retrieve(request)
