"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from langchain_core.tools import StructuredTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError
from pydantic_core import to_json

from advisor_pipeline.errors import ConfigurationError, ToolInvocationError

_TOOL_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]{0,63}$")


class ToolDescriptor(BaseModel):
    """Declarative tool specification for registration and invocation.

    ``handler`` receives the validated ``args_schema`` instance and the
    read-only call context, and may be a plain function or a coroutine
    function. Coroutine handlers are abandoned when the call times out or
    the request is cancelled. Plain functions run in a worker thread, which
    cannot be interrupted: a sync handler still runs to completion after
    its call has been reported as timed out or cancelled.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any, Mapping[str, Any]], Any]
    returns_direct: bool = False
    required_context: tuple[str, ...] = Field(default_factory=tuple)

    _openai_schema: dict[str, Any] = PrivateAttr(default_factory=dict)

    def openai_schema(self) -> dict[str, Any]:
        return self._openai_schema

    def as_langchain_tool(self, context: Mapping[str, Any] | None = None) -> StructuredTool:
        async def _run(**kwargs: Any) -> str:
            return await self.invoke(kwargs, context or {})

        return StructuredTool.from_function(
            name=self.name,
            description=self.description,
            args_schema=self.args_schema,
            coroutine=_run,
        )

    async def invoke(self, payload: Mapping[str, Any], context: Mapping[str, Any]) -> str:
        missing = [key for key in self.required_context if key not in context]
        if missing:
            raise ToolInvocationError(
                f"Tool '{self.name}' requires call context keys: {', '.join(missing)}",
                tool_name=self.name,
            )
        try:
            data = self.args_schema.model_validate(dict(payload))
        except ValidationError as exc:
            raise ToolInvocationError(
                f"Invalid arguments for tool '{self.name}': {exc.error_count()} error(s)",
                tool_name=self.name,
            ) from exc

        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(data, context)
        else:
            result = await asyncio.to_thread(self.handler, data, context)
        return result if isinstance(result, str) else to_json(result).decode("utf-8")

    def _compile(self) -> None:
        if not _TOOL_NAME.match(self.name):
            raise ConfigurationError(f"Invalid tool name: {self.name!r}")
        if not self.description.strip():
            raise ConfigurationError(f"Tool '{self.name}' needs a description")
        try:
            self._openai_schema = convert_to_openai_tool(self.as_langchain_tool())
        except Exception as exc:
            raise ConfigurationError(
                f"Tool '{self.name}' has an unusable argument schema: {exc}"
            ) from exc


class ToolRegistry:
    """Name-keyed tool table populated at startup and frozen afterwards."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor) -> None:
        if self._frozen:
            raise ConfigurationError(
                f"Tool registry is frozen; cannot register '{descriptor.name}'"
            )
        if descriptor.name in self._tools:
            raise ConfigurationError(f"Tool already registered: {descriptor.name}")
        descriptor._compile()
        self._tools[descriptor.name] = descriptor

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def resolve(self, names: Sequence[str] | None = None) -> tuple[ToolDescriptor, ...]:
        """Return the named tools, or every tool when ``names`` is ``None``."""
        if names is None:
            return tuple(self._tools.values())
        unknown = [name for name in names if name not in self._tools]
        if unknown:
            raise ConfigurationError(f"Unknown tool(s) requested: {', '.join(unknown)}")
        return tuple(self._tools[name] for name in names)

    async def execute(
        self, name: str, payload: Mapping[str, Any], context: Mapping[str, Any]
    ) -> str:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolInvocationError(f"Unknown tool: {name}", tool_name=name)
        try:
            return await descriptor.invoke(payload, context)
        except ToolInvocationError:
            raise
        except Exception as exc:
            raise ToolInvocationError(
                f"Tool '{name}' failed: {exc}", tool_name=name
            ) from exc

    def specs(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
