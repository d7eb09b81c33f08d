"""Injects vector-index context into the system slot of the prompt."""

from __future__ import annotations

from dataclasses import replace

import structlog

from advisor_pipeline.advisors.base import Advisor
from advisor_pipeline.errors import RetrievalError
from advisor_pipeline.retrieval.augmentor import RetrievalAugmentor, render_context
from advisor_pipeline.types import AdvisedRequest

logger = structlog.get_logger(__name__)


class RetrievalAdvisor(Advisor):
    name = "retrieval"

    def __init__(self, augmentor: RetrievalAugmentor) -> None:
        self.augmentor = augmentor

    async def before(self, request: AdvisedRequest) -> AdvisedRequest:
        try:
            documents = await self.augmentor.retrieve(request.user_message.content)
        except RetrievalError as exc:
            if self.augmentor.config.on_failure == "abort":
                raise
            logger.warning(
                "retrieval.degraded",
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return request

        request.scope.documents.extend(documents)
        if not documents:
            return request
        return replace(request, context=render_context(documents))
