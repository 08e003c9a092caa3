from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from chat_orchestrator.models import Conversation, Message
from chat_orchestrator.storage.store import ConversationDatabase, utc_now

_CONVERSATION_FIELDS = {"title", "endpoint", "model_options", "user_id"}


@runtime_checkable
class ConversationStorage(Protocol):
    async def load_messages(self, conversation_id: str) -> list[Message]: ...

    async def save_message(self, message: Message) -> None: ...

    async def save_conversation(self, user_id: str | None, partial: Mapping[str, Any]) -> None: ...

    async def load_conversation_title(self, user_id: str | None, conversation_id: str) -> str: ...

    async def load_conversation(self, user_id: str | None, conversation_id: str) -> Conversation | None: ...


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        message_id=row["message_id"],
        parent_message_id=row["parent_message_id"],
        conversation_id=row["conversation_id"],
        sender=row["sender"],
        text=row["text"],
        is_created_by_user=bool(row["is_created_by_user"]),
        unfinished=bool(row["unfinished"]),
        cancelled=bool(row["cancelled"]),
        error=bool(row["error"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        conversation_id=row["conversation_id"],
        title=row["title"],
        endpoint=row["endpoint"],
        model_options=_parse_options(row["model_options_json"]),
        user_id=row["user_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _parse_options(options_json: str) -> dict:
    try:
        parsed = json.loads(options_json)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable model options on stored conversation")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ConversationStore:
    """SQLite-backed message and conversation persistence.

    Statements run on a worker thread; a lock keeps the shared connection to one
    statement sequence at a time.
    """

    def __init__(self, database: ConversationDatabase):
        self._db = database
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._db.close()

    async def load_messages(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self._load_messages, conversation_id)

    async def save_message(self, message: Message) -> None:
        await asyncio.to_thread(self._save_message, message)

    async def save_conversation(self, user_id: str | None, partial: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._save_conversation, user_id, dict(partial))

    async def load_conversation_title(self, user_id: str | None, conversation_id: str) -> str:
        conversation = await self.load_conversation(user_id, conversation_id)
        return conversation.title if conversation is not None else ""

    async def load_conversation(self, user_id: str | None, conversation_id: str) -> Conversation | None:
        return await asyncio.to_thread(self._load_conversation, user_id, conversation_id)

    def _load_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            rows = self._db.execute(
                """
                SELECT *
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def _save_message(self, message: Message) -> None:
        now = utc_now()
        with self._lock:
            self._db.execute(
                """
                INSERT INTO messages (
                    message_id, conversation_id, parent_message_id, sender, text,
                    is_created_by_user, unfinished, cancelled, error, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    sender = excluded.sender,
                    text = excluded.text,
                    unfinished = excluded.unfinished,
                    cancelled = excluded.cancelled,
                    error = excluded.error,
                    updated_at = excluded.updated_at
                """,
                (
                    message.message_id,
                    message.conversation_id,
                    message.parent_message_id,
                    message.sender,
                    message.text,
                    1 if message.is_created_by_user else 0,
                    1 if message.unfinished else 0,
                    1 if message.cancelled else 0,
                    1 if message.error else 0,
                    message.created_at or now,
                    now,
                ),
            )
            self._db.commit()

    def _save_conversation(self, user_id: str | None, partial: dict[str, Any]) -> None:
        conversation_id = partial.get("conversation_id")
        if not conversation_id:
            raise ValueError("save_conversation requires a conversation_id")
        ignored = set(partial) - _CONVERSATION_FIELDS - {"conversation_id"}
        if ignored:
            logger.debug(f"Ignoring unknown conversation fields: {sorted(ignored)}")

        now = utc_now()
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM conversations WHERE conversation_id = ? LIMIT 1",
                (conversation_id,),
            ).fetchone()
            if row is None:
                self._db.execute(
                    """
                    INSERT INTO conversations (
                        conversation_id, user_id, title, endpoint, model_options_json, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation_id,
                        user_id,
                        str(partial.get("title") or ""),
                        str(partial.get("endpoint") or ""),
                        json.dumps(partial.get("model_options") or {}, ensure_ascii=True),
                        now,
                        now,
                    ),
                )
            else:
                current = _row_to_conversation(row)
                options = dict(current.model_options)
                options.update(partial.get("model_options") or {})
                self._db.execute(
                    """
                    UPDATE conversations
                    SET user_id = ?, title = ?, endpoint = ?, model_options_json = ?, updated_at = ?
                    WHERE conversation_id = ?
                    """,
                    (
                        current.user_id if user_id is None else user_id,
                        str(partial["title"] or "") if "title" in partial else current.title,
                        str(partial["endpoint"] or "") if "endpoint" in partial else current.endpoint,
                        json.dumps(options, ensure_ascii=True),
                        now,
                        conversation_id,
                    ),
                )
            self._db.commit()

    def _load_conversation(self, user_id: str | None, conversation_id: str) -> Conversation | None:
        with self._lock:
            row = self._db.execute(
                """
                SELECT *
                FROM conversations
                WHERE conversation_id = ? AND (? IS NULL OR user_id IS NULL OR user_id = ?)
                LIMIT 1
                """,
                (conversation_id, user_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_conversation(row)
