"""Per-session reference bookkeeping.

A reference is a result identity ``(id, source)`` shown to the client. The
tracker's identity set only grows, and an identity is handed out as new
exactly once per session.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field

from persona.models.events import MemorySource, ReferenceSummary
from persona.models.schemas import RetrievalResult

Identity = tuple[str, str]


@dataclass
class ToolExecutionRecord:
    iteration: int
    tool_name: str
    new_reference_ids: set[Identity] = field(default_factory=set)


class ReferenceTracker:
    def __init__(self) -> None:
        self._seen: set[Identity] = set()
        self._executions: list[ToolExecutionRecord] = []
        self._emitted: list[RetrievalResult] = []
        self._breakdown: dict[str, int] = {}
        self._total_sent = 0

    @property
    def seen(self) -> frozenset[Identity]:
        return frozenset(self._seen)

    @property
    def executions(self) -> list[ToolExecutionRecord]:
        return list(self._executions)

    @property
    def emitted(self) -> list[RetrievalResult]:
        return list(self._emitted)

    def register(
        self, references: Iterable[RetrievalResult], *, tool_name: str, iteration: int
    ) -> tuple[list[RetrievalResult], ToolExecutionRecord]:
        """Filter ``references`` down to identities not seen yet and mark them seen."""
        record = ToolExecutionRecord(iteration=iteration, tool_name=tool_name)
        new: list[RetrievalResult] = []
        for reference in references:
            if reference.identity in self._seen:
                continue
            self._seen.add(reference.identity)
            record.new_reference_ids.add(reference.identity)
            new.append(reference)

        self._executions.append(record)
        self._emitted.extend(new)
        self._total_sent += len(new)
        if new:
            self._breakdown[tool_name] = self._breakdown.get(tool_name, 0) + len(new)
        return new, record

    def summary(self, record: ToolExecutionRecord) -> ReferenceSummary:
        return ReferenceSummary(
            total_unique=len(self._seen),
            total_sent=self._total_sent,
            tool_execution_number=record.iteration,
            new_in_this_round=len(record.new_reference_ids),
            tool_breakdown=dict(self._breakdown),
        )


def to_memory_source(reference: RetrievalResult, tool_name: str) -> MemorySource:
    return MemorySource(
        id=reference.id,
        content=reference.content,
        source=str(reference.metadata.get("platform") or reference.source),
        type=reference.type,
        metadata=reference.metadata,
        created_at=reference.created_at.isoformat() if reference.created_at else None,
        relevance_score=reference.relevance_score,
        tool_name=tool_name,
        is_new_reference=True,
    )
