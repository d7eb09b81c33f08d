"""Advisor chain executor: one ordered pipeline around the model call."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from typing import Any, TypeVar

import structlog

from advisor_pipeline.advisors.base import Advisor, CallChain, StreamChain
from advisor_pipeline.config import TimeoutConfig
from advisor_pipeline.errors import (
    ConfigurationError,
    MemoryStoreError,
    ModelInvocationError,
    PipelineError,
    StageTimeoutError,
)
from advisor_pipeline.memory.store import ConversationMemoryStore
from advisor_pipeline.model.base import ChatModel
from advisor_pipeline.types import (
    AdvisedRequest,
    AdvisedResponse,
    Message,
    ModelChunk,
    ModelResult,
    PipelineRequest,
    PipelineResponse,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AdvisorChainExecutor:
    """Runs a request through the advisors and the model.

    All collaborators are passed in explicitly. After the chain completes,
    the user message and the final reply are appended to memory exactly once,
    whether the reply came from the model or from a short-circuiting advisor.
    An aborted or cancelled execution persists nothing.
    """

    def __init__(
        self,
        model: ChatModel,
        advisors: Sequence[Advisor] = (),
        *,
        memory_store: ConversationMemoryStore | None = None,
        timeouts: TimeoutConfig | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.model = model
        self.advisors = list(advisors)
        self.memory_store = memory_store
        self.timeouts = timeouts or TimeoutConfig()
        self.system_prompt = system_prompt or ""

    async def call(self, request: PipelineRequest) -> PipelineResponse:
        advised = self._advise(request)
        response = await CallChain(self.advisors, self._call_model).next_call(advised)
        await self._persist(advised, response.content)
        logger.info(
            "pipeline.completed",
            conversation_id=advised.conversation_id,
            model_rounds=advised.scope.model_rounds,
            tool_calls=len(advised.scope.tool_trace),
            returned_direct=response.returned_direct,
        )
        return self._finalize(advised, response.content, response.returned_direct)

    async def stream(self, request: PipelineRequest) -> AsyncIterator[PipelineResponse]:
        """Yield content deltas, then one terminal chunk with usage and tool trace.

        Each call re-runs the whole pipeline; the iterator is not restartable.
        """
        advised = self._advise(request)
        deltas: list[str] = []
        terminal: AdvisedResponse | None = None
        chain = StreamChain(self.advisors, self._stream_model)
        async with aclosing(chain.next_stream(advised)) as chunks:
            async for chunk in chunks:
                if chunk.finished:
                    terminal = chunk
                    continue
                deltas.append(chunk.content)
                yield PipelineResponse(content=chunk.content, finished=False)

        if terminal is None:
            raise ModelInvocationError("Model stream ended without a terminal chunk")
        content = terminal.content if terminal.returned_direct else "".join(deltas)
        await self._persist(advised, content)
        final = self._finalize(advised, "", terminal.returned_direct)
        logger.info(
            "pipeline.stream_completed",
            conversation_id=advised.conversation_id,
            chunks=len(deltas),
            model_rounds=advised.scope.model_rounds,
        )
        yield final

    def _advise(self, request: PipelineRequest) -> AdvisedRequest:
        if not request.conversation_id:
            raise ConfigurationError("conversation_id must not be empty")
        return AdvisedRequest.from_request(request, system_text=self.system_prompt)

    async def _call_model(self, request: AdvisedRequest) -> AdvisedResponse:
        request.scope.model_rounds += 1
        result: ModelResult = await self._guard(
            self.model.invoke(request.prompt(), request.options, request.tools)
        )
        return AdvisedResponse(content=result.content, model_result=result)

    async def _stream_model(self, request: AdvisedRequest) -> AsyncIterator[AdvisedResponse]:
        request.scope.model_rounds += 1
        iterator = aiter(self.model.stream(request.prompt(), request.options, request.tools))
        deltas: list[str] = []
        last: ModelChunk | None = None
        try:
            while True:
                chunk = await self._guard(_next_or_none(iterator))
                if chunk is not None and chunk.content:
                    deltas.append(chunk.content)
                    yield AdvisedResponse(content=chunk.content, finished=False)
                if chunk is None or chunk.finished:
                    last = chunk
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        result = ModelResult(
            content="".join(deltas),
            tool_call_intents=last.tool_call_intents if last is not None else (),
            usage=last.usage if last is not None else None,
        )
        yield AdvisedResponse(content="", model_result=result, finished=True)

    async def _guard(self, operation: Any) -> Any:
        timeout = self.timeouts.model_seconds
        try:
            return await asyncio.wait_for(operation, timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError("model", timeout or 0.0) from exc
        except PipelineError:
            raise
        except Exception as exc:
            raise ModelInvocationError(f"Model invocation failed: {exc}") from exc

    async def _persist(self, request: AdvisedRequest, content: str) -> None:
        if self.memory_store is None:
            return
        try:
            await self.memory_store.append_many(
                request.conversation_id,
                [request.user_message, Message.assistant(content)],
            )
        except MemoryStoreError as exc:
            if not self.memory_store.config.proceed_without_memory:
                raise
            logger.warning(
                "memory.persist_skipped",
                conversation_id=request.conversation_id,
                error=str(exc),
            )

    @staticmethod
    def _finalize(request: AdvisedRequest, content: str, returned_direct: bool) -> PipelineResponse:
        scope = request.scope
        return PipelineResponse(
            content=content,
            usage=scope.usage,
            tool_trace=list(scope.tool_trace),
            model_rounds=scope.model_rounds,
            documents=list(scope.documents),
            returned_direct=returned_direct,
            finished=True,
        )


async def _next_or_none(iterator: AsyncIterator[T]) -> T | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None
