"""Model invocation contract."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Protocol

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.types import Message, ModelChunk, ModelResult

if TYPE_CHECKING:
    from advisor_pipeline.tools.registry import ToolDescriptor


class ChatModel(Protocol):
    """A chat-completion backend.

    ``stream`` yields content deltas and ends with one chunk where
    ``finished`` is true, carrying tool-call intents and usage.
    """

    async def invoke(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> ModelResult:
        """Run one model round."""

    def stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> AsyncIterator[ModelChunk]:
        """Run one model round incrementally."""
