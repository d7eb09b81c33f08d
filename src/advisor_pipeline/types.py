"""Shared domain models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from advisor_pipeline.config import ChatOptions

if TYPE_CHECKING:
    from advisor_pipeline.tools.registry import ToolDescriptor


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCallIntent:
    """A model-issued request to run one tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Message:
    """One immutable conversation message."""

    role: Role
    content: str
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: tuple[ToolCallIntent, ...] = ()

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str, *, tool_calls: tuple[ToolCallIntent, ...] = ()
    ) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, content: str, *, tool_call_id: str, name: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id, name=name)


@dataclass(frozen=True, slots=True)
class RetrievedDocument:
    """A vector-index hit. Lives for one request only."""

    text: str
    score: float
    source_id: str


@dataclass(slots=True)
class Usage:
    """Token accounting for one or more model rounds."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def of(
        cls,
        prompt_tokens: int | None,
        completion_tokens: int | None,
        total_tokens: int | None = None,
    ) -> "Usage":
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        total = total_tokens if total_tokens is not None else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    round: int = 1
    status: str = "ok"
    error: str | None = None
    returns_direct: bool = False
    tool_call_id: str | None = None


@dataclass(frozen=True, slots=True)
class ModelResult:
    """The outcome of a single model round."""

    content: str
    tool_call_intents: tuple[ToolCallIntent, ...] = ()
    usage: Usage | None = None


@dataclass(frozen=True, slots=True)
class ModelChunk:
    """A streamed model delta; the terminal chunk carries intents and usage."""

    content: str = ""
    finished: bool = False
    tool_call_intents: tuple[ToolCallIntent, ...] = ()
    usage: Usage | None = None


@dataclass(frozen=True, slots=True)
class PipelineRequest:
    conversation_id: str
    user_message: str
    call_context: Mapping[str, Any] = field(default_factory=dict)
    options: ChatOptions = field(default_factory=ChatOptions)

    def with_context(self, **values: Any) -> "PipelineRequest":
        """Return a copy whose call context is extended with ``values``."""
        merged = {**self.call_context, **values}
        return replace(self, call_context=merged)


@dataclass(slots=True)
class PipelineResponse:
    content: str
    usage: Usage = field(default_factory=Usage)
    tool_trace: list[ToolTrace] = field(default_factory=list)
    model_rounds: int = 0
    documents: list[RetrievedDocument] = field(default_factory=list)
    returned_direct: bool = False
    finished: bool = True


@dataclass(frozen=True, slots=True)
class EvaluationVerdict:
    passed: bool
    score: float | None = None
    rationale: str | None = None


@dataclass(slots=True)
class ExecutionScope:
    """Mutable accumulator shared by every advisor of one pipeline execution."""

    usage: Usage = field(default_factory=Usage)
    tool_trace: list[ToolTrace] = field(default_factory=list)
    model_rounds: int = 0
    documents: list[RetrievedDocument] = field(default_factory=list)


@dataclass(slots=True)
class AdvisedRequest:
    """The request as it travels through the advisor chain.

    Advisors transform it with ``dataclasses.replace``; only ``scope`` is
    shared and mutated in place.
    """

    conversation_id: str
    user_message: Message
    call_context: Mapping[str, Any]
    options: ChatOptions
    scope: ExecutionScope
    system_text: str = ""
    context: str = ""
    history: tuple[Message, ...] = ()
    tool_messages: tuple[Message, ...] = ()
    tools: tuple[ToolDescriptor, ...] = ()

    @classmethod
    def from_request(
        cls, request: PipelineRequest, *, system_text: str = ""
    ) -> "AdvisedRequest":
        return cls(
            conversation_id=request.conversation_id,
            user_message=Message.user(request.user_message),
            call_context=MappingProxyType(dict(request.call_context)),
            options=request.options,
            scope=ExecutionScope(),
            system_text=request.options.system_prompt or system_text,
        )

    def prompt(self) -> list[Message]:
        """Assemble the outgoing message list for the next model round."""
        system = "\n\n".join(part for part in (self.system_text, self.context) if part)
        messages: list[Message] = []
        if system:
            messages.append(Message.system(system))
        messages.extend(self.history)
        messages.append(self.user_message)
        messages.extend(self.tool_messages)
        return messages


@dataclass(slots=True)
class AdvisedResponse:
    """A response (or stream chunk) travelling back through the chain."""

    content: str
    model_result: ModelResult | None = None
    returned_direct: bool = False
    finished: bool = True
