"""Deep-think progress notifications.

Disabled notifiers swallow every call, so default-mode code paths can notify
unconditionally.
"""

from typing import Any

from persona.engine.stream_writer import ModelStreamWriter
from persona.models.events import DeepThinkProgress, DeepThinkProgressEvent, DeepThinkStage


class DeepThinkNotifier:
    def __init__(self, writer: ModelStreamWriter, enabled: bool):
        self._writer = writer
        self.enabled = enabled
        self.iteration = 0
        self._reflected = False

    def next_iteration(self) -> int:
        self.iteration += 1
        return self.iteration

    async def emit(
        self,
        stage: DeepThinkStage,
        message: str,
        *,
        label: str | None = None,
        plan_step: int | None = None,
        total_steps: int | None = None,
        confidence: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        await self._writer.emit(
            DeepThinkProgressEvent(
                progress=DeepThinkProgress(
                    stage=stage,
                    message=message,
                    label=label,
                    iteration=self.iteration or None,
                    plan_step=plan_step,
                    total_steps=total_steps,
                    confidence=confidence,
                    metadata=metadata,
                )
            )
        )

    async def reflect_once(self) -> None:
        """Announce the first streamed thought of the answer; later calls are no-ops."""
        if self._reflected:
            return
        self._reflected = True
        await self.emit("reflection", "Composing the response", label="Thought")
