"""Error taxonomy for the orchestration pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every failure raised by the pipeline core."""


class ConfigurationError(PipelineError):
    """Invalid wiring or request setup. Fatal and never retried."""


class ModelInvocationError(PipelineError):
    """The model backend failed for the current attempt."""


class RetrievalError(PipelineError):
    """The vector index could not be queried."""


class ToolInvocationError(PipelineError):
    """A tool could not be invoked, or the tool-call round bound was exceeded."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class MemoryStoreError(PipelineError):
    """Conversation history could not be read or written."""

    def __init__(self, message: str, *, conversation_id: str) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id


class StageTimeoutError(PipelineError):
    """A model, tool, retrieval, memory or evaluator call ran out of time."""

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        super().__init__(f"{stage} call timed out after {timeout_seconds:.1f}s")
        self.stage = stage
        self.timeout_seconds = timeout_seconds
