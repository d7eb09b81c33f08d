"""SQLite-backed conversation persistence."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Sequence
from contextlib import closing
from pathlib import Path
from typing import Any

from advisor_pipeline.types import Message, Role, ToolCallIntent


class SQLiteConversationPersistence:
    """Stores each conversation as one JSON row; blocking I/O runs in a thread."""

    def __init__(self, sqlite_path: str | Path) -> None:
        self.db_file = Path(sqlite_path)
        _ensure_table(self.db_file)

    async def get(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self._read, conversation_id)

    async def put(self, conversation_id: str, messages: Sequence[Message]) -> None:
        payload = json.dumps([message_to_dict(message) for message in messages])
        await asyncio.to_thread(self._write, conversation_id, payload)

    async def delete(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._delete, conversation_id)

    def _read(self, conversation_id: str) -> list[Message]:
        with closing(sqlite3.connect(self.db_file)) as conn:
            row = conn.execute(
                "SELECT messages FROM conversation_memory WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return []
        return [message_from_dict(item) for item in json.loads(row[0])]

    def _write(self, conversation_id: str, payload: str) -> None:
        with closing(sqlite3.connect(self.db_file)) as conn, conn:
            conn.execute(
                "INSERT INTO conversation_memory(conversation_id, messages) VALUES(?, ?) "
                "ON CONFLICT(conversation_id) DO UPDATE SET messages=excluded.messages",
                (conversation_id, payload),
            )

    def _delete(self, conversation_id: str) -> None:
        with closing(sqlite3.connect(self.db_file)) as conn, conn:
            conn.execute(
                "DELETE FROM conversation_memory WHERE conversation_id = ?",
                (conversation_id,),
            )


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "role": message.role.value,
        "content": message.content,
        "tool_call_id": message.tool_call_id,
        "name": message.name,
        "tool_calls": [
            {"id": call.id, "name": call.name, "arguments": call.arguments}
            for call in message.tool_calls
        ],
    }


def message_from_dict(data: dict[str, Any]) -> Message:
    return Message(
        role=Role(data["role"]),
        content=data["content"],
        tool_call_id=data.get("tool_call_id"),
        name=data.get("name"),
        tool_calls=tuple(
            ToolCallIntent(id=call["id"], name=call["name"], arguments=call["arguments"])
            for call in data.get("tool_calls", [])
        ),
    )


def _ensure_table(db_path: Path) -> None:
    with closing(sqlite3.connect(db_path)) as conn, conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS conversation_memory "
            "(conversation_id TEXT PRIMARY KEY, messages TEXT NOT NULL)"
        )
