import asyncio

import pytest
from conftest import ScriptedChatModel, ScriptedEvaluator, answer

from advisor_pipeline.advisors.memory import MemoryAdvisor
from advisor_pipeline.config import DEFAULT_FALLBACK_MESSAGE, RetryConfig
from advisor_pipeline.errors import ModelInvocationError
from advisor_pipeline.evaluation.retry import SelfEvaluatingResponder
from advisor_pipeline.executor import AdvisorChainExecutor
from advisor_pipeline.types import EvaluationVerdict, PipelineRequest


def _request() -> PipelineRequest:
    return PipelineRequest(conversation_id="c1", user_message="What is the capital of India?")


def _responder(model, evaluator, memory_store=None, **retry) -> SelfEvaluatingResponder:
    advisors = [MemoryAdvisor(memory_store)] if memory_store is not None else []
    executor = AdvisorChainExecutor(model, advisors, memory_store=memory_store)
    return SelfEvaluatingResponder(
        executor, evaluator, RetryConfig(**retry), evaluator_timeout=0.05
    )


async def test_always_failing_evaluator_exhausts_then_falls_back() -> None:
    model = ScriptedChatModel(answer("Mumbai"))
    evaluator = ScriptedEvaluator(False)

    result = await _responder(model, evaluator, max_attempts=3).respond(_request())

    assert model.rounds == 3
    assert len(evaluator.requests) == 3
    assert result.fell_back
    assert result.content == DEFAULT_FALLBACK_MESSAGE
    assert result.attempts == 3
    assert [failure.attempt for failure in result.failures] == [1, 2, 3]
    assert result.response is None


async def test_pass_on_second_attempt_returns_that_content_verbatim() -> None:
    model = ScriptedChatModel(answer("Mumbai"), answer("New Delhi is the capital of India."))
    evaluator = ScriptedEvaluator(False, True)

    result = await _responder(model, evaluator).respond(_request())

    assert model.rounds == 2
    assert result.content == "New Delhi is the capital of India."
    assert result.attempts == 2
    assert not result.fell_back
    assert [failure.content for failure in result.failures] == ["Mumbai"]
    assert evaluator.requests[1].response_text == "New Delhi is the capital of India."


class _BrokenEvaluator:
    async def evaluate(self, request) -> EvaluationVerdict:
        raise ConnectionError("judge unavailable")


class _SlowEvaluator:
    async def evaluate(self, request) -> EvaluationVerdict:
        await asyncio.sleep(1)
        return EvaluationVerdict(passed=False)


@pytest.mark.parametrize("evaluator", [_BrokenEvaluator(), _SlowEvaluator()])
async def test_unavailable_evaluator_passes_by_default(evaluator) -> None:
    model = ScriptedChatModel(answer("New Delhi"))

    result = await _responder(model, evaluator).respond(_request())

    assert result.content == "New Delhi"
    assert model.rounds == 1
    assert "evaluator" in result.verdict.rationale


async def test_unavailable_evaluator_can_count_as_failure() -> None:
    model = ScriptedChatModel(answer("New Delhi"))

    result = await _responder(
        model, _BrokenEvaluator(), max_attempts=2, evaluator_errors_pass=False
    ).respond(_request())

    assert result.fell_back
    assert model.rounds == 2


async def test_pipeline_errors_are_not_retried() -> None:
    class _Down(ScriptedChatModel):
        async def invoke(self, messages, options, tools=()):
            self.calls.append(list(messages))
            raise ConnectionError("backend down")

    model = _Down()

    with pytest.raises(ModelInvocationError):
        await _responder(model, ScriptedEvaluator(True)).respond(_request())

    assert model.rounds == 1


async def test_failed_attempts_stay_in_memory(memory_store) -> None:
    model = ScriptedChatModel(answer("Mumbai"), answer("New Delhi"))

    await _responder(model, ScriptedEvaluator(False, True), memory_store).respond(_request())

    history = await memory_store.load("c1")
    assert [m.content for m in history] == [
        "What is the capital of India?",
        "Mumbai",
        "What is the capital of India?",
        "New Delhi",
    ]
