from conftest import ScriptedChatModel, answer, tool_call
from structlog.testing import capture_logs

from advisor_pipeline.advisors.tool_dispatch import ToolDispatchAdvisor
from advisor_pipeline.advisors.usage_audit import UsageAuditAdvisor
from advisor_pipeline.executor import AdvisorChainExecutor
from advisor_pipeline.obs.tracing import (
    AuditRecord,
    InMemoryAuditSink,
    StructlogAuditSink,
    emit_safely,
)
from advisor_pipeline.types import ModelResult, PipelineRequest, Usage


def _request() -> PipelineRequest:
    return PipelineRequest(conversation_id="c1", user_message="hello")


async def test_usage_is_accumulated_across_rounds(echo_registry, audit_sink) -> None:
    model = ScriptedChatModel(tool_call("echo", text="x"), answer("done", 20, 4))
    executor = AdvisorChainExecutor(
        model, [ToolDispatchAdvisor(echo_registry), UsageAuditAdvisor(audit_sink)]
    )

    response = await executor.call(_request())

    assert response.usage == Usage(prompt_tokens=28, completion_tokens=7, total_tokens=35)
    assert [record.payload["round"] for record in audit_sink.records("usage")] == [1, 2]
    assert audit_sink.summary()["total_tokens"] == 35


async def test_missing_usage_is_tolerated(audit_sink) -> None:
    executor = AdvisorChainExecutor(
        ScriptedChatModel(ModelResult(content="no usage reported")),
        [UsageAuditAdvisor(audit_sink)],
    )

    response = await executor.call(_request())

    assert response.content == "no usage reported"
    assert response.usage.total_tokens == 0
    assert audit_sink.records("usage") == []


class _ExplodingSink:
    def emit(self, record: AuditRecord) -> None:
        raise RuntimeError("sink offline")


async def test_failing_sink_never_fails_the_pipeline() -> None:
    executor = AdvisorChainExecutor(
        ScriptedChatModel(answer("fine")), [UsageAuditAdvisor(_ExplodingSink())]
    )

    response = await executor.call(_request())

    assert response.content == "fine"
    assert response.usage.total_tokens == 15


async def test_streamed_usage_is_flushed_only_after_terminal_chunk(audit_sink) -> None:
    executor = AdvisorChainExecutor(
        ScriptedChatModel(answer("a b c d")), [UsageAuditAdvisor(audit_sink)]
    )
    seen_before_terminal = []

    async for chunk in executor.stream(_request()):
        if not chunk.finished:
            seen_before_terminal.append(len(audit_sink.records("usage")))
        else:
            final = chunk

    assert seen_before_terminal == [0, 0, 0, 0]
    assert final.usage.total_tokens == 15
    assert len(audit_sink.records("usage")) == 1


def test_summary_and_emit_safely() -> None:
    sink = InMemoryAuditSink(max_records=2)

    emit_safely(sink, AuditRecord.for_usage("c1", Usage.of(1, 1), round=1))
    emit_safely(sink, AuditRecord.for_usage("c1", Usage.of(2, 2), round=2))
    emit_safely(sink, AuditRecord.for_usage("c1", Usage.of(3, 3), round=3))
    emit_safely(None, AuditRecord.for_usage("c1", Usage.of(9, 9), round=4))
    emit_safely(_ExplodingSink(), AuditRecord.for_usage("c1", Usage.of(9, 9), round=5))

    assert [record.payload["round"] for record in sink.list_recent()] == [2, 3]
    assert sink.summary()["total_tokens"] == 10


def test_structlog_sink_writes_one_event_per_record() -> None:
    with capture_logs() as logs:
        StructlogAuditSink().emit(AuditRecord.for_usage("c1", Usage.of(4, 1), round=1))

    assert logs[0]["event"] == "audit.usage"
    assert logs[0]["conversation_id"] == "c1"
    assert logs[0]["total_tokens"] == 5
