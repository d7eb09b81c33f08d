"""Loads conversation history into the prompt."""

from __future__ import annotations

from dataclasses import replace

import structlog

from advisor_pipeline.advisors.base import Advisor
from advisor_pipeline.errors import MemoryStoreError
from advisor_pipeline.memory.store import ConversationMemoryStore
from advisor_pipeline.types import AdvisedRequest

logger = structlog.get_logger(__name__)


class MemoryAdvisor(Advisor):
    """Prepends the stored history of the conversation.

    Persisting the finished exchange is the executor's job, so that it happens
    exactly once even when a later advisor short-circuits.
    """

    name = "memory"

    def __init__(self, store: ConversationMemoryStore) -> None:
        self.store = store

    async def before(self, request: AdvisedRequest) -> AdvisedRequest:
        try:
            history = await self.store.load(request.conversation_id)
        except MemoryStoreError as exc:
            if not self.store.config.proceed_without_memory:
                raise
            logger.warning(
                "memory.load_skipped",
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return request
        return replace(request, history=tuple(history))
