"""Advisor (interceptor) contract and the onion-style call/stream chains.

Advisors run in registration order on the way in and in reverse order on the
way out. An advisor may pass a request through, transform it, short-circuit
by returning without calling the chain, or raise to abort the execution.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import aclosing

from advisor_pipeline.errors import ConfigurationError
from advisor_pipeline.types import AdvisedRequest, AdvisedResponse

CallTerminal = Callable[[AdvisedRequest], Awaitable[AdvisedResponse]]
StreamTerminal = Callable[[AdvisedRequest], AsyncIterator[AdvisedResponse]]


class Advisor:
    """Base advisor with before/after hooks.

    Subclasses override ``before``/``after`` for simple request/response
    transformation, or ``around_call``/``around_stream`` for full control.
    In streams ``after`` is applied to the terminal chunk only.
    """

    name: str = "advisor"

    async def before(self, request: AdvisedRequest) -> AdvisedRequest:
        return request

    async def after(self, request: AdvisedRequest, response: AdvisedResponse) -> AdvisedResponse:
        return response

    async def around_call(self, request: AdvisedRequest, chain: "CallChain") -> AdvisedResponse:
        request = await self.before(request)
        response = await chain.next_call(request)
        return await self.after(request, response)

    async def around_stream(
        self, request: AdvisedRequest, chain: "StreamChain"
    ) -> AsyncIterator[AdvisedResponse]:
        request = await self.before(request)
        async with aclosing(chain.next_stream(request)) as chunks:
            async for chunk in chunks:
                if chunk.finished:
                    chunk = await self.after(request, chunk)
                yield chunk


class CallChain:
    """Position in the advisor list; ``next_call`` may be invoked repeatedly."""

    def __init__(
        self, advisors: Sequence[Advisor], terminal: CallTerminal, index: int = 0
    ) -> None:
        self._advisors = advisors
        self._terminal = terminal
        self._index = index

    async def next_call(self, request: AdvisedRequest) -> AdvisedResponse:
        if self._index >= len(self._advisors):
            return await self._terminal(request)
        advisor = self._advisors[self._index]
        return await advisor.around_call(
            request, CallChain(self._advisors, self._terminal, self._index + 1)
        )


class StreamChain:
    def __init__(
        self, advisors: Sequence[Advisor], terminal: StreamTerminal, index: int = 0
    ) -> None:
        self._advisors = advisors
        self._terminal = terminal
        self._index = index

    def next_stream(self, request: AdvisedRequest) -> AsyncIterator[AdvisedResponse]:
        if self._index >= len(self._advisors):
            return self._terminal(request)
        advisor = self._advisors[self._index]
        return advisor.around_stream(
            request, StreamChain(self._advisors, self._terminal, self._index + 1)
        )


class AdvisorRegistry:
    """Advisors keyed by name; the chain order is built explicitly at startup."""

    def __init__(self) -> None:
        self._advisors: dict[str, Advisor] = {}

    def register(self, advisor: Advisor) -> None:
        if advisor.name in self._advisors:
            raise ConfigurationError(f"Advisor already registered: {advisor.name}")
        self._advisors[advisor.name] = advisor

    def get(self, name: str) -> Advisor:
        advisor = self._advisors.get(name)
        if advisor is None:
            raise ConfigurationError(f"Unknown advisor: {name}")
        return advisor

    def build(self, names: Sequence[str]) -> list[Advisor]:
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Advisor order lists a name twice: {list(names)}")
        return [self.get(name) for name in names]

    def names(self) -> list[str]:
        return list(self._advisors)
