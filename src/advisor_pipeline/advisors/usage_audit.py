"""Passive token-usage accounting."""

from __future__ import annotations

import structlog

from advisor_pipeline.advisors.base import Advisor
from advisor_pipeline.obs.tracing import AuditRecord, ObservabilitySink, emit_safely
from advisor_pipeline.types import AdvisedRequest, AdvisedResponse

logger = structlog.get_logger(__name__)


class UsageAuditAdvisor(Advisor):
    """Adds each model round's reported usage to the execution totals.

    Register it after tool dispatch so that it sees every model round. It
    never changes the response and never fails the pipeline.
    """

    name = "usage_audit"

    def __init__(self, sink: ObservabilitySink | None = None) -> None:
        self.sink = sink

    async def after(self, request: AdvisedRequest, response: AdvisedResponse) -> AdvisedResponse:
        result = response.model_result
        if result is None or result.usage is None:
            logger.debug("usage.missing", conversation_id=request.conversation_id)
            return response
        try:
            request.scope.usage = request.scope.usage + result.usage
            logger.info(
                "usage.recorded",
                conversation_id=request.conversation_id,
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            )
            emit_safely(
                self.sink,
                AuditRecord.for_usage(
                    request.conversation_id, result.usage, round=request.scope.model_rounds
                ),
            )
        except Exception:
            logger.exception("usage.audit_failed", conversation_id=request.conversation_id)
        return response
