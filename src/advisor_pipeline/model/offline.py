"""Deterministic chat model used when no external LLM is configured."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Sequence

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.obs.tracing import estimate_token_count
from advisor_pipeline.retrieval.augmentor import CONTEXT_DELIMITER
from advisor_pipeline.tools.registry import ToolDescriptor
from advisor_pipeline.types import Message, ModelChunk, ModelResult, Role, Usage

_NO_EVIDENCE = "No language model is configured, and no indexed context matches: {question}"


class DeterministicChatModel:
    """Answers from retrieved context without an LLM dependency.

    It keeps the same contract as ``LangChainChatModel`` and is useful for
    local/offline environments where ``OPENAI_API_KEY`` is not configured.
    It never issues tool calls.
    """

    async def invoke(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> ModelResult:
        question = next(
            (m.content for m in reversed(messages) if m.role is Role.USER), ""
        )
        snippets = _context_lines(messages)
        answer = _build_answer(snippets) if snippets else _NO_EVIDENCE.format(question=question)
        prompt_tokens = sum(estimate_token_count(message.content) for message in messages)
        return ModelResult(
            content=answer,
            usage=Usage.of(prompt_tokens, estimate_token_count(answer)),
        )

    async def stream(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] = (),
    ) -> AsyncIterator[ModelChunk]:
        result = await self.invoke(messages, options, tools)
        for piece in re.split(r"(?<=\s)", result.content):
            if piece:
                yield ModelChunk(content=piece)
        yield ModelChunk(finished=True, usage=result.usage)


def _context_lines(messages: Sequence[Message]) -> list[str]:
    system = next((m.content for m in messages if m.role is Role.SYSTEM), "")
    parts = system.split(CONTEXT_DELIMITER)
    if len(parts) < 3:
        return []
    return [line.strip() for line in parts[1].splitlines() if line.strip()]


def _build_answer(snippets: list[str]) -> str:
    lines = [f"{idx}. {snippet}" for idx, snippet in enumerate(snippets[:3], start=1)]
    return "\n".join(lines)
