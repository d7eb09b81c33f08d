"""Validate-and-retry loop around a full pipeline execution."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from advisor_pipeline.config import RetryConfig
from advisor_pipeline.evaluation.evaluators import EvaluationRequest, Evaluator
from advisor_pipeline.executor import AdvisorChainExecutor
from advisor_pipeline.types import EvaluationVerdict, PipelineRequest, PipelineResponse

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    ATTEMPT = "attempt"
    EVALUATE = "evaluate"
    PASS = "pass"
    FAIL = "fail"
    EXHAUSTED = "exhausted"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class ValidationFailure:
    """A pipeline run that completed but whose answer was rejected."""

    attempt: int
    content: str
    verdict: EvaluationVerdict


@dataclass(slots=True)
class ValidatedResponse:
    content: str
    attempts: int
    verdict: EvaluationVerdict | None
    response: PipelineResponse | None = None
    fell_back: bool = False
    failures: list[ValidationFailure] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class _AttemptOutcome:
    attempt: int
    response: PipelineResponse
    verdict: EvaluationVerdict


class SelfEvaluatingResponder:
    """Runs the executor, judges the answer and retries rejected answers.

    Every attempt re-runs the whole pipeline, so memory appended by a rejected
    attempt stays in the conversation. Only rejected verdicts are retried:
    pipeline errors (including timeouts) surface to the caller unchanged.
    Once attempts are exhausted the configured fallback text is returned.
    """

    def __init__(
        self,
        executor: AdvisorChainExecutor,
        evaluator: Evaluator,
        config: RetryConfig | None = None,
        *,
        evaluator_timeout: float | None = None,
    ) -> None:
        self.executor = executor
        self.evaluator = evaluator
        self.config = config or RetryConfig()
        self.evaluator_timeout = evaluator_timeout

    async def respond(self, request: PipelineRequest) -> ValidatedResponse:
        failures: list[ValidationFailure] = []
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            retry=retry_if_result(lambda result: not result.verdict.passed),
            wait=wait_fixed(self.config.wait_seconds),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    outcome = await self._attempt(
                        request, attempt.retry_state.attempt_number, failures
                    )
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(outcome)
                    if outcome.verdict.passed:
                        return self._accept(request, outcome, failures)
        except RetryError:
            pass
        return self._fallback(request, failures)

    def _accept(
        self,
        request: PipelineRequest,
        outcome: _AttemptOutcome,
        failures: list[ValidationFailure],
    ) -> ValidatedResponse:
        self._transition(request, TurnState.DONE, attempt=outcome.attempt)
        return ValidatedResponse(
            content=outcome.response.content,
            attempts=outcome.attempt,
            verdict=outcome.verdict,
            response=outcome.response,
            failures=failures,
        )

    async def _attempt(
        self,
        request: PipelineRequest,
        attempt: int,
        failures: list[ValidationFailure],
    ) -> _AttemptOutcome:
        self._transition(request, TurnState.ATTEMPT, attempt=attempt)
        response = await self.executor.call(request)

        self._transition(request, TurnState.EVALUATE, attempt=attempt)
        verdict = await self._evaluate(request, response)
        if verdict.passed:
            self._transition(request, TurnState.PASS, attempt=attempt, score=verdict.score)
        else:
            failures.append(ValidationFailure(attempt, response.content, verdict))
            self._transition(
                request,
                TurnState.FAIL,
                attempt=attempt,
                score=verdict.score,
                rationale=verdict.rationale,
            )
        return _AttemptOutcome(attempt, response, verdict)

    async def _evaluate(
        self, request: PipelineRequest, response: PipelineResponse
    ) -> EvaluationVerdict:
        evaluation = EvaluationRequest(
            user_text=request.user_message,
            response_text=response.content,
            documents=[doc.text for doc in response.documents],
        )
        try:
            return await asyncio.wait_for(
                self.evaluator.evaluate(evaluation), self.evaluator_timeout
            )
        except asyncio.TimeoutError:
            reason = f"evaluator timed out after {self.evaluator_timeout}s"
        except Exception as exc:
            reason = f"evaluator failed: {exc}"

        logger.warning(
            "evaluation.unavailable",
            conversation_id=request.conversation_id,
            reason=reason,
            counted_as_pass=self.config.evaluator_errors_pass,
        )
        return EvaluationVerdict(passed=self.config.evaluator_errors_pass, rationale=reason)

    def _fallback(
        self, request: PipelineRequest, failures: list[ValidationFailure]
    ) -> ValidatedResponse:
        self._transition(request, TurnState.EXHAUSTED, attempts=len(failures))
        self._transition(request, TurnState.FALLBACK)
        self._transition(request, TurnState.DONE, fell_back=True)
        return ValidatedResponse(
            content=self.config.fallback_message,
            attempts=len(failures),
            verdict=failures[-1].verdict if failures else None,
            fell_back=True,
            failures=failures,
        )

    @staticmethod
    def _transition(request: PipelineRequest, state: TurnState, **fields: object) -> None:
        logger.info(
            "evaluation.state",
            conversation_id=request.conversation_id,
            state=state.value,
            **fields,
        )
