"""Stream events sent to the client, one per SSE ``data:`` line.

Every event carries a ``type`` discriminator. The stream writer adds the
``models`` and ``conversationUniqueId`` envelope fields on serialisation.
"""

from typing import Annotated, Any, Literal

from pydantic import Field

from persona.models.schemas import CamelModel

DeepThinkStage = Literal["planning", "research", "analysis", "synthesis", "reflection", "note"]


class TextEvent(CamelModel):
    type: Literal["text"] = "text"
    content: str


class ToolResultSummary(CamelModel):
    tool_name: str
    result: dict[str, Any]


class ToolResultsEvent(CamelModel):
    type: Literal["tool-results"] = "tool-results"
    tool_results: list[ToolResultSummary]


class MemorySource(CamelModel):
    id: str
    content: str
    source: str
    type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    relevance_score: float | None = None
    tool_name: str | None = None
    is_new_reference: bool = True


class ReferenceSummary(CamelModel):
    total_unique: int
    total_sent: int
    tool_execution_number: int
    new_in_this_round: int
    tool_breakdown: dict[str, int] = Field(default_factory=dict)


class MemorySourcesEvent(CamelModel):
    type: Literal["memory-sources"] = "memory-sources"
    memory_sources: list[MemorySource]
    reference_summary: ReferenceSummary | None = None


class ConversationTitleEvent(CamelModel):
    type: Literal["conversation-title"] = "conversation-title"
    title: str


class DeepThinkProgress(CamelModel):
    stage: DeepThinkStage
    message: str
    label: str | None = None
    iteration: int | None = None
    plan_step: int | None = None
    total_steps: int | None = None
    confidence: str | None = None
    metadata: dict[str, Any] | None = None


class DeepThinkProgressEvent(CamelModel):
    type: Literal["deep-think-progress"] = "deep-think-progress"
    progress: DeepThinkProgress


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    error: str
    code: str | None = None


StreamEvent = Annotated[
    TextEvent
    | ToolResultsEvent
    | MemorySourcesEvent
    | ConversationTitleEvent
    | DeepThinkProgressEvent
    | ErrorEvent,
    Field(discriminator="type"),
]
