"""Error taxonomy for the persona engine.

Soft failures (a source, a tool, a persistence write) are absorbed at the seam
where they happen and logged. Hard failures either reject the request before
streaming starts (``ModelUnavailableError``) or end one model's stream with an
inline error event (``StreamGenerationError``).
"""


class PersonaError(Exception):
    """Base class for engine errors."""


class ModelUnavailableError(PersonaError):
    """A requested model cannot be resolved to a provider."""

    def __init__(self, model: str):
        super().__init__(f"Model not available: {model}")
        self.model = model


class StreamGenerationError(PersonaError):
    """The language model stream failed mid-generation."""


class SourceFailureError(PersonaError):
    """A knowledge source failed or timed out."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class ToolExecutionError(PersonaError):
    """A tool could not produce a result for the model."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class PersistenceError(PersonaError):
    """Saving a conversation or message failed."""

    def __init__(self, operation: str, conversation_id: str, message: str):
        super().__init__(f"{operation} failed for {conversation_id}: {message}")
        self.operation = operation
        self.conversation_id = conversation_id
