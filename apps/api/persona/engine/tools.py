"""Tool definitions and the per-request tool registry.

``ToolRegistry.execute`` never raises for tool-level problems. Unknown tools,
malformed arguments and handler failures come back as an error payload the
model can read and recover from:

    {"error": "...", "category": "...", "tool": "<name>"}
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from persona.core.errors import ToolExecutionError
from persona.core.metrics import tool_calls_total
from persona.engine.progress import DeepThinkNotifier
from persona.engine.stream_writer import ModelStreamWriter
from persona.models.schemas import RetrievalResult

logger = structlog.get_logger(__name__)


@dataclass
class ToolContext:
    conversation_id: str
    user_id: str | None
    app_id: str | None
    model: str
    writer: ModelStreamWriter
    progress: DeepThinkNotifier
    memory_owner_id: str | None = None


@dataclass
class ToolOutput:
    """What a tool hands back.

    ``output`` is sent to the model verbatim. ``references`` are the raw
    results the tool surfaced, used for reference tracking; they are also
    stored in ``output`` under the tool's ``reference_key`` and stripped from
    the client-facing tool-results event.
    """

    output: dict[str, Any]
    references: list[RetrievalResult] = field(default_factory=list)
    summary: str | None = None
    is_error: bool = False


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolOutput]]


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    reference_key: str | None = None

    def openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def tool_error(tool_name: str, message: str, category: str) -> ToolOutput:
    return ToolOutput(
        output={"error": message, "category": category, "tool": tool_name},
        is_error=True,
    )


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def openai_schemas(self) -> list[dict[str, Any]]:
        return [tool.openai_schema() for tool in self._tools.values()]

    async def execute(
        self, name: str, arguments: dict[str, Any] | None, ctx: ToolContext
    ) -> ToolOutput:
        tool = self._tools.get(name)
        if tool is None:
            tool_calls_total.labels(tool=name, status="unknown").inc()
            logger.warning("tool.unknown", tool=name, available=self.names)
            return tool_error(name, f"Unknown tool: {name}", "user_input_error")
        if arguments is None:
            tool_calls_total.labels(tool=name, status="invalid_arguments").inc()
            logger.warning("tool.invalid_arguments", tool=name)
            return tool_error(name, "Tool arguments must be a JSON object", "user_input_error")

        try:
            result = await tool.handler(arguments, ctx)
        except asyncio.CancelledError:
            raise
        except ToolExecutionError as exc:
            tool_calls_total.labels(tool=name, status="error").inc()
            logger.warning("tool.rejected", tool=name, error=str(exc))
            return tool_error(name, str(exc), "user_input_error")
        except Exception as exc:
            tool_calls_total.labels(tool=name, status="error").inc()
            logger.exception("tool.failed", tool=name)
            return tool_error(name, f"Tool execution failed: {exc}", "runtime_error")

        tool_calls_total.labels(tool=name, status="error" if result.is_error else "success").inc()
        return result

    async def execute_batch(
        self, calls: list[tuple[str, dict[str, Any] | None]], ctx: ToolContext
    ) -> list[ToolOutput]:
        """Run calls concurrently; results come back in call order."""
        return list(await asyncio.gather(*(self.execute(n, a, ctx) for n, a in calls)))
