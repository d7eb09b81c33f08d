"""Configuration models for the advisor pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ADVISOR_ORDER = ["logger", "memory", "retrieval", "tool_dispatch", "usage_audit"]
DEFAULT_FALLBACK_MESSAGE = (
    "I'm sorry, I could not answer your question. Please try rephrasing it."
)


class ChatOptions(BaseModel):
    """Per-request model options."""

    model_config = ConfigDict(frozen=True)

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    system_prompt: str | None = None
    tool_names: list[str] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def invocation_kwargs(self) -> dict[str, Any]:
        kwargs = dict(self.extra)
        if self.model is not None:
            kwargs["model"] = self.model
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs


class MemoryConfig(BaseModel):
    """Configures the per-conversation history window."""

    window_size: int = Field(default=10, ge=1)
    proceed_without_memory: bool = False


class RetrievalConfig(BaseModel):
    """Configures vector-index augmentation."""

    top_k: int = Field(default=3, ge=1)
    similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    on_failure: Literal["proceed", "abort"] = "proceed"


class ToolDispatchConfig(BaseModel):
    """Configures the bound on model round-trips caused by tool calls."""

    max_tool_rounds: int = Field(default=1, ge=0)


class TimeoutConfig(BaseModel):
    """Per-call timeouts in seconds. ``None`` disables the timeout."""

    model_seconds: float | None = Field(default=60.0, gt=0.0)
    tool_seconds: float | None = Field(default=30.0, gt=0.0)
    retrieval_seconds: float | None = Field(default=10.0, gt=0.0)
    memory_seconds: float | None = Field(default=5.0, gt=0.0)
    evaluator_seconds: float | None = Field(default=60.0, gt=0.0)


class RetryConfig(BaseModel):
    """Configures the validate-and-retry loop around a full pipeline run."""

    max_attempts: int = Field(default=3, ge=1)
    evaluator_errors_pass: bool = True
    wait_seconds: float = Field(default=0.0, ge=0.0)
    fallback_message: str = Field(default=DEFAULT_FALLBACK_MESSAGE, min_length=1)


class PipelineConfig(BaseModel):
    """Aggregate configuration used when assembling a pipeline."""

    system_prompt: str | None = None
    advisors: list[str] = Field(default_factory=lambda: list(DEFAULT_ADVISOR_ORDER))
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tools: ToolDispatchConfig = Field(default_factory=ToolDispatchConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "advisor-pipeline"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    openai_api_key: str = Field(default="", description="Enables the OpenAI chat model")
    openai_model: str = "gpt-4o-mini"

    memory_window_size: int = Field(default=10, ge=1)
    memory_sqlite_path: str | None = Field(
        default=None,
        description="Persist conversation history in SQLite instead of process memory",
    )
    system_prompt: str = (
        "You are a helpful assistant. Answer concisely and say so when you do not know."
    )

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            system_prompt=self.system_prompt,
            memory=MemoryConfig(window_size=self.memory_window_size),
        )
