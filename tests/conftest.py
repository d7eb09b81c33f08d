import re
from collections.abc import AsyncIterator, Sequence

import pytest
from pydantic import BaseModel

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.memory.store import ConversationMemoryStore
from advisor_pipeline.obs.tracing import InMemoryAuditSink
from advisor_pipeline.tools.registry import ToolDescriptor, ToolRegistry
from advisor_pipeline.tools.tickets import TicketRepository
from advisor_pipeline.types import (
    EvaluationVerdict,
    Message,
    ModelChunk,
    ModelResult,
    ToolCallIntent,
    Usage,
)


class ScriptedChatModel:
    """Replays scripted results in order; the last one repeats."""

    def __init__(self, *results: ModelResult) -> None:
        self.results = list(results) or [ModelResult(content="ok", usage=Usage.of(5, 2))]
        self.calls: list[list[Message]] = []
        self.tools_seen: list[tuple[str, ...]] = []
        self.options_seen: list[ChatOptions] = []

    async def invoke(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> ModelResult:
        self.calls.append(list(messages))
        self.tools_seen.append(tuple(tool.name for tool in tools))
        self.options_seen.append(options)
        return self.results[min(len(self.calls), len(self.results)) - 1]

    async def stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> AsyncIterator[ModelChunk]:
        result = await self.invoke(messages, options, tools)
        for piece in re.split(r"(?<= )", result.content):
            if piece:
                yield ModelChunk(content=piece)
        yield ModelChunk(
            finished=True,
            tool_call_intents=result.tool_call_intents,
            usage=result.usage,
        )

    @property
    def rounds(self) -> int:
        return len(self.calls)


class ScriptedEvaluator:
    """Returns scripted verdicts in order; the last one repeats."""

    def __init__(self, *verdicts: bool) -> None:
        self.verdicts = list(verdicts)
        self.requests = []

    async def evaluate(self, request) -> EvaluationVerdict:
        self.requests.append(request)
        passed = self.verdicts[min(len(self.requests), len(self.verdicts)) - 1]
        return EvaluationVerdict(passed=passed, score=1.0 if passed else 0.0)


def answer(content: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> ModelResult:
    return ModelResult(content=content, usage=Usage.of(prompt_tokens, completion_tokens))


def tool_call(name: str, call_id: str = "call_1", **arguments) -> ModelResult:
    return ModelResult(
        content="",
        tool_call_intents=(ToolCallIntent(id=call_id, name=name, arguments=arguments),),
        usage=Usage.of(8, 3),
    )


class EchoInput(BaseModel):
    text: str


def echo_tool(name: str = "echo", *, returns_direct: bool = False) -> ToolDescriptor:
    def _handler(data: EchoInput, context) -> str:
        return data.text.upper()

    return ToolDescriptor(
        name=name,
        description="uppercase the text",
        args_schema=EchoInput,
        handler=_handler,
        returns_direct=returns_direct,
    )


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def memory_store() -> ConversationMemoryStore:
    return ConversationMemoryStore()


@pytest.fixture
def ticket_repository() -> TicketRepository:
    return TicketRepository()


@pytest.fixture
def echo_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(echo_tool())
    registry.register(echo_tool("shout", returns_direct=True))
    registry.freeze()
    return registry
