"""Debug logging of outgoing prompts and incoming replies."""

from __future__ import annotations

import structlog

from advisor_pipeline.advisors.base import Advisor
from advisor_pipeline.types import AdvisedRequest, AdvisedResponse

logger = structlog.get_logger(__name__)


class LoggingAdvisor(Advisor):
    name = "logger"

    async def before(self, request: AdvisedRequest) -> AdvisedRequest:
        logger.debug(
            "advisor.request",
            conversation_id=request.conversation_id,
            user_message=request.user_message.content,
            history=len(request.history),
        )
        return request

    async def after(self, request: AdvisedRequest, response: AdvisedResponse) -> AdvisedResponse:
        logger.debug(
            "advisor.response",
            conversation_id=request.conversation_id,
            content=response.content,
            returned_direct=response.returned_direct,
            model_rounds=request.scope.model_rounds,
        )
        return response
