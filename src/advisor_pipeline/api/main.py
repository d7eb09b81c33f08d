"""FastAPI entrypoint for chat, streaming chat and audit endpoints.

Run with ``uvicorn advisor_pipeline.api.main:create_app --factory``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from advisor_pipeline.config import ChatOptions, Settings
from advisor_pipeline.errors import ConfigurationError, PipelineError, StageTimeoutError
from advisor_pipeline.evaluation.evaluators import Evaluator
from advisor_pipeline.memory.sqlite import SQLiteConversationPersistence
from advisor_pipeline.model.base import ChatModel
from advisor_pipeline.model.langchain_model import LangChainChatModel
from advisor_pipeline.model.offline import DeterministicChatModel
from advisor_pipeline.obs.logging import configure_logging
from advisor_pipeline.obs.tracing import InMemoryAuditSink
from advisor_pipeline.retrieval.vector_index import VectorIndex
from advisor_pipeline.types import PipelineRequest
from advisor_pipeline.wiring import build_pipeline

logger = structlog.get_logger(__name__)


def _create_model(settings: Settings) -> ChatModel:
    if not settings.openai_api_key:
        return DeterministicChatModel()

    from langchain_openai import ChatOpenAI

    return LangChainChatModel(
        ChatOpenAI(model=settings.openai_model, api_key=settings.openai_api_key)
    )


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    tool_names: list[str] | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    def options(self) -> ChatOptions:
        return ChatOptions(tool_names=self.tool_names, temperature=self.temperature)


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, StageTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def create_app(
    settings: Settings | None = None,
    *,
    model: ChatModel | None = None,
    vector_index: VectorIndex | None = None,
    evaluator: Evaluator | None = None,
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level, settings.log_format, settings.service_name)

    llm_configured = model is not None or bool(settings.openai_api_key)
    model = model or _create_model(settings)
    sink = InMemoryAuditSink()
    persistence = (
        SQLiteConversationPersistence(settings.memory_sqlite_path)
        if settings.memory_sqlite_path
        else None
    )
    components = build_pipeline(
        settings.pipeline_config(),
        model=model,
        vector_index=vector_index,
        persistence=persistence,
        sink=sink,
        evaluator=evaluator,
    )

    app = FastAPI(title="Advisor Pipeline", version="0.1.0")

    def _request(username: str, body: ChatRequest) -> PipelineRequest:
        return PipelineRequest(
            conversation_id=username,
            user_message=body.message,
            options=body.options(),
        ).with_context(username=username)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": llm_configured,
            "model_mode": type(model).__name__,
            "advisors": [advisor.name for advisor in components.executor.advisors],
            "tools": [tool.name for tool in components.tool_registry.specs()],
        }

    @app.post("/chat")
    async def chat(body: ChatRequest, username: str = Header(min_length=1)) -> dict[str, Any]:
        try:
            response = await components.executor.call(_request(username, body))
        except PipelineError as exc:
            raise _http_error(exc) from exc
        return asdict(response)

    @app.post("/chat/stream")
    async def chat_stream(
        body: ChatRequest, username: str = Header(min_length=1)
    ) -> StreamingResponse:
        stream = components.executor.stream(_request(username, body))
        # errors raised before the first chunk still map to a status code
        try:
            first = await anext(stream)
        except StopAsyncIteration:
            first = None
        except PipelineError as exc:
            await stream.aclose()
            raise _http_error(exc) from exc

        async def _body() -> AsyncIterator[str]:
            try:
                async with aclosing(stream) as chunks:
                    if first is not None and not first.finished:
                        yield first.content
                    async for chunk in chunks:
                        if not chunk.finished:
                            yield chunk.content
            except PipelineError:
                logger.exception("chat.stream_failed", conversation_id=username)
                raise

        return StreamingResponse(_body(), media_type="text/plain")

    @app.post("/chat/evaluated")
    async def chat_evaluated(
        body: ChatRequest, username: str = Header(min_length=1)
    ) -> dict[str, Any]:
        try:
            validated = await components.responder.respond(_request(username, body))
        except PipelineError as exc:
            raise _http_error(exc) from exc
        return {
            "content": validated.content,
            "attempts": validated.attempts,
            "fell_back": validated.fell_back,
            "verdict": asdict(validated.verdict) if validated.verdict is not None else None,
        }

    @app.get("/tickets")
    def tickets(username: str = Header(min_length=1)) -> dict[str, Any]:
        repository = components.ticket_repository
        items = repository.by_username(username) if repository is not None else []
        return {"items": [ticket.model_dump(mode="json") for ticket in items]}

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return sink.summary()

    @app.get("/audit")
    def audit(limit: int = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in sink.list_recent(limit=limit)]}

    return app

