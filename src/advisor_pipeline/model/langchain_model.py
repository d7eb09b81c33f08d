"""Adapter from langchain-core chat models to the pipeline's model contract."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import Runnable

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.tools.registry import ToolDescriptor
from advisor_pipeline.types import Message, ModelChunk, ModelResult, Role, ToolCallIntent, Usage


class LangChainChatModel:
    """Wraps any ``BaseChatModel`` (OpenAI, Bedrock, fakes, ...)."""

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    async def invoke(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> ModelResult:
        reply = await self._runnable(options, tools).ainvoke(to_langchain_messages(messages))
        return ModelResult(
            content=message_text(reply.content),
            tool_call_intents=_intents(reply),
            usage=_usage(reply),
        )

    async def stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> AsyncIterator[ModelChunk]:
        gathered: AIMessageChunk | None = None
        async for chunk in self._runnable(options, tools).astream(
            to_langchain_messages(messages)
        ):
            gathered = chunk if gathered is None else gathered + chunk
            text = message_text(chunk.content)
            if text:
                yield ModelChunk(content=text)
        yield ModelChunk(
            finished=True,
            tool_call_intents=_intents(gathered) if gathered is not None else (),
            usage=_usage(gathered) if gathered is not None else None,
        )

    def _runnable(self, options: ChatOptions, tools: Sequence[ToolDescriptor]) -> Runnable:
        runnable: Runnable = self.llm
        if tools:
            runnable = self.llm.bind_tools([tool.as_langchain_tool() for tool in tools])
        kwargs = options.invocation_kwargs()
        if kwargs:
            runnable = runnable.bind(**kwargs)
        return runnable


def to_langchain_messages(messages: Sequence[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            converted.append(SystemMessage(content=message.content))
        elif message.role is Role.USER:
            converted.append(HumanMessage(content=message.content))
        elif message.role is Role.ASSISTANT:
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"name": call.name, "args": call.arguments, "id": call.id}
                        for call in message.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(
                    content=message.content,
                    tool_call_id=message.tool_call_id or "",
                    name=message.name,
                )
            )
    return converted


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


def _intents(message: AIMessage) -> tuple[ToolCallIntent, ...]:
    return tuple(
        ToolCallIntent(
            id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            name=call["name"],
            arguments=dict(call.get("args") or {}),
        )
        for call in message.tool_calls
    )


def _usage(message: AIMessage) -> Usage | None:
    metadata = message.usage_metadata
    if not metadata:
        return None
    return Usage.of(
        metadata.get("input_tokens"),
        metadata.get("output_tokens"),
        metadata.get("total_tokens"),
    )
