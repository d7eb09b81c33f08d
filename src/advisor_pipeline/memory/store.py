"""Bounded per-conversation history with pluggable persistence."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

import structlog

from advisor_pipeline.config import MemoryConfig
from advisor_pipeline.errors import MemoryStoreError, StageTimeoutError
from advisor_pipeline.types import Message, Role

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConversationPersistence(Protocol):
    """Durable storage of conversation messages keyed by conversation id."""

    async def get(self, conversation_id: str) -> list[Message]:
        """Return stored messages, oldest first; empty when unseen."""

    async def put(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Replace stored messages."""

    async def delete(self, conversation_id: str) -> None:
        """Forget a conversation."""


class InMemoryConversationPersistence:
    """Process-local persistence used by default and in tests."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[Message, ...]] = {}

    async def get(self, conversation_id: str) -> list[Message]:
        return list(self._data.get(conversation_id, ()))

    async def put(self, conversation_id: str, messages: Sequence[Message]) -> None:
        self._data[conversation_id] = tuple(messages)

    async def delete(self, conversation_id: str) -> None:
        self._data.pop(conversation_id, None)


def apply_window(messages: Sequence[Message], window_size: int) -> list[Message]:
    """Trim ``messages`` to ``window_size`` entries.

    The oldest non-system messages go first. System messages are only dropped
    (oldest first) when they alone exceed the window.
    """
    kept = list(messages)
    overflow = len(kept) - window_size
    if overflow <= 0:
        return kept

    evict: set[int] = set()
    for idx, message in enumerate(kept):
        if len(evict) == overflow:
            break
        if message.role is not Role.SYSTEM:
            evict.add(idx)
    for idx, message in enumerate(kept):
        if len(evict) == overflow:
            break
        if message.role is Role.SYSTEM:
            evict.add(idx)
    return [message for idx, message in enumerate(kept) if idx not in evict]


@dataclass(slots=True)
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ConversationMemoryStore:
    """Owns every ConversationHistory; all reads and writes go through here.

    Operations for one conversation id are serialized in arrival order by a
    per-conversation lock; different ids never wait on each other.
    """

    def __init__(
        self,
        persistence: ConversationPersistence | None = None,
        config: MemoryConfig | None = None,
        *,
        io_timeout: float | None = None,
    ) -> None:
        self.persistence = persistence or InMemoryConversationPersistence()
        self.config = config or MemoryConfig()
        self.io_timeout = io_timeout
        self._locks: dict[str, _LockEntry] = {}

    async def load(self, conversation_id: str) -> list[Message]:
        async with self._serialized(conversation_id):
            return await self._io(conversation_id, self.persistence.get(conversation_id))

    async def append(self, conversation_id: str, message: Message) -> None:
        await self.append_many(conversation_id, [message])

    async def append_many(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Append ``messages`` as one atomic read-modify-write."""
        async with self._serialized(conversation_id):
            history = await self._io(conversation_id, self.persistence.get(conversation_id))
            history.extend(messages)
            windowed = apply_window(history, self.config.window_size)
            await self._io(conversation_id, self.persistence.put(conversation_id, windowed))
        logger.debug(
            "memory.appended",
            conversation_id=conversation_id,
            appended=len(messages),
            evicted=len(history) - len(windowed),
            size=len(windowed),
        )

    async def clear(self, conversation_id: str) -> None:
        async with self._serialized(conversation_id):
            await self._io(conversation_id, self.persistence.delete(conversation_id))

    @asynccontextmanager
    async def _serialized(self, conversation_id: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(conversation_id, _LockEntry())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(conversation_id, None)

    async def _io(self, conversation_id: str, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, self.io_timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError("memory", self.io_timeout or 0.0) from exc
        except Exception as exc:
            raise MemoryStoreError(
                f"conversation store unavailable: {exc}",
                conversation_id=conversation_id,
            ) from exc
