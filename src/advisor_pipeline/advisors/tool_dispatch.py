"""Executes model-issued tool calls between model rounds."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, replace

import structlog

from advisor_pipeline.advisors.base import Advisor, CallChain, StreamChain
from advisor_pipeline.config import ToolDispatchConfig
from advisor_pipeline.errors import ToolInvocationError
from advisor_pipeline.obs.tracing import AuditRecord, ObservabilitySink, Timer, emit_safely
from advisor_pipeline.tools.registry import ToolRegistry
from advisor_pipeline.types import (
    AdvisedRequest,
    AdvisedResponse,
    Message,
    ToolCallIntent,
    ToolTrace,
)

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class _ToolOutcome:
    intent: ToolCallIntent
    text: str
    ok: bool
    returns_direct: bool
    trace: ToolTrace


class ToolDispatchAdvisor(Advisor):
    """Runs tool intents, then either short-circuits or asks the model again.

    Failures are per tool: an unknown tool, missing call context, invalid
    arguments, a handler exception or a timeout becomes an inline tool
    message and the round continues. Only exceeding ``max_tool_rounds`` extra
    model rounds aborts the request.
    """

    name = "tool_dispatch"

    def __init__(
        self,
        registry: ToolRegistry,
        config: ToolDispatchConfig | None = None,
        *,
        tool_timeout: float | None = None,
        sink: ObservabilitySink | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or ToolDispatchConfig()
        self.tool_timeout = tool_timeout
        self.sink = sink

    async def around_call(self, request: AdvisedRequest, chain: CallChain) -> AdvisedResponse:
        request = self._expose_tools(request)
        response = await chain.next_call(request)
        extra_rounds = 0
        while True:
            intents = _intents_of(response)
            if not intents:
                return response
            if not self._may_return_direct(intents):
                self._check_round_bound(extra_rounds)
            outcomes = await self._dispatch(request, intents)
            direct = _direct_response(outcomes)
            if direct is not None:
                return direct
            self._check_round_bound(extra_rounds)
            extra_rounds += 1
            request = _with_tool_results(request, response, outcomes)
            response = await chain.next_call(request)

    async def around_stream(
        self, request: AdvisedRequest, chain: StreamChain
    ) -> AsyncIterator[AdvisedResponse]:
        request = self._expose_tools(request)
        extra_rounds = 0
        while True:
            terminal: AdvisedResponse | None = None
            async with aclosing(chain.next_stream(request)) as chunks:
                async for chunk in chunks:
                    if chunk.finished:
                        terminal = chunk
                    else:
                        yield chunk
            if terminal is None:
                return
            intents = _intents_of(terminal)
            if not intents:
                yield terminal
                return
            if not self._may_return_direct(intents):
                self._check_round_bound(extra_rounds)
            outcomes = await self._dispatch(request, intents)
            direct = _direct_response(outcomes)
            if direct is not None:
                yield AdvisedResponse(content=direct.content, finished=False)
                yield direct
                return
            self._check_round_bound(extra_rounds)
            extra_rounds += 1
            request = _with_tool_results(request, terminal, outcomes)

    def _expose_tools(self, request: AdvisedRequest) -> AdvisedRequest:
        return replace(request, tools=self.registry.resolve(request.options.tool_names))

    def _may_return_direct(self, intents: Sequence[ToolCallIntent]) -> bool:
        for intent in intents:
            descriptor = self.registry.get(intent.name)
            if descriptor is not None and descriptor.returns_direct:
                return True
        return False

    def _check_round_bound(self, extra_rounds: int) -> None:
        if extra_rounds >= self.config.max_tool_rounds:
            raise ToolInvocationError(
                f"Tool-call round limit exceeded ({self.config.max_tool_rounds} extra round(s))"
            )

    async def _dispatch(
        self, request: AdvisedRequest, intents: Sequence[ToolCallIntent]
    ) -> list[_ToolOutcome]:
        outcomes = list(
            await asyncio.gather(*(self._invoke(request, intent) for intent in intents))
        )
        # traces follow intent order, not completion order
        for outcome in outcomes:
            request.scope.tool_trace.append(outcome.trace)
            emit_safely(self.sink, AuditRecord.for_tool(request.conversation_id, outcome.trace))
        return outcomes

    async def _invoke(self, request: AdvisedRequest, intent: ToolCallIntent) -> _ToolOutcome:
        descriptor = self.registry.get(intent.name)
        returns_direct = descriptor is not None and descriptor.returns_direct
        status, error = "ok", None
        with Timer() as timer:
            try:
                text = await asyncio.wait_for(
                    self.registry.execute(intent.name, intent.arguments, request.call_context),
                    self.tool_timeout,
                )
            except asyncio.TimeoutError:
                status = "timeout"
                error = f"Tool '{intent.name}' timed out after {self.tool_timeout}s"
                text = f"ERROR: {error}"
            except ToolInvocationError as exc:
                status, error = "error", str(exc)
                text = f"ERROR: {error}"

        trace = ToolTrace(
            name=intent.name,
            input_payload=dict(intent.arguments),
            output_preview=text[:320],
            latency_ms=timer.elapsed_ms,
            round=request.scope.model_rounds,
            status=status,
            error=error,
            returns_direct=returns_direct,
            tool_call_id=intent.id,
        )
        if error is None:
            logger.info(
                "tool.invoked",
                conversation_id=request.conversation_id,
                tool=intent.name,
                latency_ms=round(timer.elapsed_ms, 2),
            )
        else:
            logger.warning(
                "tool.failed",
                conversation_id=request.conversation_id,
                tool=intent.name,
                status=status,
                error=error,
            )
        return _ToolOutcome(
            intent=intent,
            text=text,
            ok=error is None,
            returns_direct=returns_direct,
            trace=trace,
        )


def _intents_of(response: AdvisedResponse) -> tuple[ToolCallIntent, ...]:
    if response.model_result is None:
        return ()
    return response.model_result.tool_call_intents


def _direct_response(outcomes: Sequence[_ToolOutcome]) -> AdvisedResponse | None:
    direct = [outcome.text for outcome in outcomes if outcome.ok and outcome.returns_direct]
    if not direct:
        return None
    return AdvisedResponse(content="\n".join(direct), returned_direct=True)


def _with_tool_results(
    request: AdvisedRequest, response: AdvisedResponse, outcomes: Sequence[_ToolOutcome]
) -> AdvisedRequest:
    result = response.model_result
    assistant = Message.assistant(
        result.content if result is not None else response.content,
        tool_calls=tuple(outcome.intent for outcome in outcomes),
    )
    results = tuple(
        Message.tool(outcome.text, tool_call_id=outcome.intent.id, name=outcome.intent.name)
        for outcome in outcomes
    )
    return replace(request, tool_messages=request.tool_messages + (assistant, *results))
