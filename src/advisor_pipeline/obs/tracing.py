"""Audit records, observability sinks and timing helpers."""

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from advisor_pipeline.types import ToolTrace, Usage

logger = structlog.get_logger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class AuditRecord:
    """One observability event: a usage report or a tool invocation."""

    kind: str
    conversation_id: str
    payload: dict[str, Any]
    timestamp_utc: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @classmethod
    def for_usage(cls, conversation_id: str, usage: Usage, *, round: int) -> "AuditRecord":
        return cls(
            kind="usage",
            conversation_id=conversation_id,
            payload={"round": round, **asdict(usage)},
        )

    @classmethod
    def for_tool(cls, conversation_id: str, trace: ToolTrace) -> "AuditRecord":
        return cls(kind="tool", conversation_id=conversation_id, payload=asdict(trace))


class ObservabilitySink(Protocol):
    """Accepts audit records. Must not block the pipeline."""

    def emit(self, record: AuditRecord) -> None:
        """Record one event."""


class StructlogAuditSink:
    """Writes every audit record as a structured log line."""

    def __init__(self, name: str = "advisor_pipeline.audit") -> None:
        self._logger = structlog.get_logger(name)

    def emit(self, record: AuditRecord) -> None:
        self._logger.info(
            f"audit.{record.kind}",
            conversation_id=record.conversation_id,
            timestamp_utc=record.timestamp_utc,
            **record.payload,
        )


class InMemoryAuditSink:
    """In-memory audit storage for API-level observability and tests."""

    def __init__(self, max_records: int = 10_000) -> None:
        self._records: list[AuditRecord] = []
        self._max_records = max_records

    def emit(self, record: AuditRecord) -> None:
        self._records.append(record)
        if len(self._records) > self._max_records:
            del self._records[: len(self._records) - self._max_records]

    def records(self, kind: str | None = None) -> list[AuditRecord]:
        return [record for record in self._records if kind is None or record.kind == kind]

    def list_recent(self, limit: int = 20) -> list[AuditRecord]:
        return self._records[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate token and tool metrics for dashboard display."""
        usage = self.records("usage")
        tools = self.records("tool")
        latencies = sorted(float(record.payload["latency_ms"]) for record in tools)
        failed = sum(1 for record in tools if record.payload["status"] != "ok")
        return {
            "model_rounds": len(usage),
            "total_prompt_tokens": sum(int(r.payload["prompt_tokens"]) for r in usage),
            "total_completion_tokens": sum(
                int(r.payload["completion_tokens"]) for r in usage
            ),
            "total_tokens": sum(int(r.payload["total_tokens"]) for r in usage),
            "tool_calls": len(tools),
            "failed_tool_calls": failed,
            "avg_tool_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
        }


def emit_safely(sink: ObservabilitySink | None, record: AuditRecord) -> None:
    """Fire-and-forget emission; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        sink.emit(record)
    except Exception:
        logger.exception("audit.emit_failed", kind=record.kind)


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN_PATTERN.findall(text)]
