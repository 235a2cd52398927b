from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    STATUS_DELIVERED,
    STATUS_RANK,
    STATUS_READ,
    STATUS_SENT,
    Message,
    conversation_id,
    message_from_record,
    message_to_record,
)
from .sqlite_backend import SQLiteBackend

__all__ = ["InMemoryMessageStore", "SQLiteMessageStore", "conversation_id"]

_TIMESTAMP_FIELD = {STATUS_DELIVERED: "delivered_at_ms", STATUS_READ: "read_at_ms"}


def _check_status(new_status: str) -> None:
    if new_status not in _TIMESTAMP_FIELD:
        raise ValueError(f"cannot advance a message to {new_status!r}")


class InMemoryMessageStore:
    """Conversation store keyed by conversation id, one record per message."""

    def __init__(self) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._by_conversation: Dict[str, List[str]] = {}

    def create_message(self, message: Message) -> Message:
        if message.message_id in self._records:
            raise ValueError("message already exists")
        self._records[message.message_id] = message_to_record(message)
        self._by_conversation.setdefault(message.conversation_id, []).append(message.message_id)
        return message_from_record(self._records[message.message_id])

    def find_by_id(self, message_id: str) -> Message | None:
        record = self._records.get(message_id)
        return message_from_record(record) if record is not None else None

    def find_by_conversation_id(self, conv_id: str, since_ms: int | None = None) -> List[Message]:
        records = [self._records[mid] for mid in self._by_conversation.get(conv_id, [])]
        if since_ms is not None:
            records = [r for r in records if r["created_at_ms"] > since_ms]
        # sorted() is stable, so equal timestamps keep arrival order
        records = sorted(records, key=lambda r: r["created_at_ms"])
        return [message_from_record(r) for r in records]

    def update_status(self, message_id: str, new_status: str, at_ms: int) -> Tuple[Optional[Message], bool]:
        """Advance ``message_id`` to ``new_status`` unless it is already there or beyond.

        Returns the current message and whether this call changed it. Each
        timestamp is written at most once.
        """

        _check_status(new_status)
        record = self._records.get(message_id)
        if record is None:
            return None, False
        if STATUS_RANK[record["status"]] >= STATUS_RANK[new_status]:
            return message_from_record(record), False
        record["status"] = new_status
        ts_field = _TIMESTAMP_FIELD[new_status]
        if record[ts_field] is None:
            record[ts_field] = at_ms
        return message_from_record(record), True

    def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Message | None:
        record = self._records.get(message_id)
        if record is None:
            return None
        record["reactions"][user_id] = emoji
        return message_from_record(record)

    def remove_reaction(self, message_id: str, user_id: str) -> Message | None:
        record = self._records.get(message_id)
        if record is None:
            return None
        record["reactions"].pop(user_id, None)
        return message_from_record(record)

    def soft_delete_for_user(self, message_id: str, user_id: str) -> Message | None:
        record = self._records.get(message_id)
        if record is None:
            return None
        if user_id not in record["deleted_for"]:
            record["deleted_for"] = sorted([*record["deleted_for"], user_id])
        return message_from_record(record)

    def soft_delete_for_everyone(self, message_id: str, at_ms: int) -> Message | None:
        record = self._records.get(message_id)
        if record is None:
            return None
        if not record["deleted_for_everyone"]:
            record["deleted_for_everyone"] = True
            record["deleted_at_ms"] = at_ms
        return message_from_record(record)

    def find_recent_conversations_by_user(self, user_id: str) -> Dict[str, Message]:
        latest: Dict[str, dict[str, Any]] = {}
        for record in self._records.values():
            if user_id not in (record["sender_id"], record["receiver_id"]):
                continue
            peer = record["receiver_id"] if record["sender_id"] == user_id else record["sender_id"]
            current = latest.get(peer)
            if current is None or record["created_at_ms"] >= current["created_at_ms"]:
                latest[peer] = record
        return {peer: message_from_record(record) for peer, record in latest.items()}

    def find_undelivered(self, receiver_id: str) -> List[Message]:
        records = [
            r for r in self._records.values() if r["receiver_id"] == receiver_id and r["status"] == STATUS_SENT
        ]
        return [message_from_record(r) for r in sorted(records, key=lambda r: r["created_at_ms"])]


_MESSAGE_COLUMNS = (
    "message_id, sender_id, receiver_id, content, message_type, created_at_ms, status, "
    "delivered_at_ms, read_at_ms, reactions_json, deleted_for_json, deleted_for_everyone, deleted_at_ms"
)


def _row_to_message(row: sqlite3.Row) -> Message:
    record = dict(row)
    record["reactions"] = json.loads(record.pop("reactions_json") or "{}")
    record["deleted_for"] = json.loads(record.pop("deleted_for_json") or "[]")
    return message_from_record(record)


class SQLiteMessageStore:
    """Durable conversation store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def create_message(self, message: Message) -> Message:
        record = message_to_record(message)
        with self._backend.locked() as conn:
            conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS}, conversation_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["message_id"],
                    record["sender_id"],
                    record["receiver_id"],
                    record["content"],
                    record["message_type"],
                    record["created_at_ms"],
                    record["status"],
                    record["delivered_at_ms"],
                    record["read_at_ms"],
                    json.dumps(record["reactions"], sort_keys=True),
                    json.dumps(record["deleted_for"]),
                    int(record["deleted_for_everyone"]),
                    record["deleted_at_ms"],
                    message.conversation_id,
                ),
            )
        return message_from_record(record)

    def find_by_id(self, message_id: str) -> Message | None:
        with self._backend.locked() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row is not None else None

    def find_by_conversation_id(self, conv_id: str, since_ms: int | None = None) -> List[Message]:
        with self._backend.locked() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE conversation_id = ? AND created_at_ms > ?
                ORDER BY created_at_ms ASC, rowid ASC
                """,
                (conv_id, -1 if since_ms is None else since_ms),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def update_status(self, message_id: str, new_status: str, at_ms: int) -> Tuple[Optional[Message], bool]:
        _check_status(new_status)
        lower = [status for status, rank in STATUS_RANK.items() if rank < STATUS_RANK[new_status]]
        ts_field = _TIMESTAMP_FIELD[new_status]
        placeholders = ", ".join("?" for _ in lower)
        with self._backend.locked() as conn:
            cursor = conn.execute(
                f"""
                UPDATE messages
                SET status = ?, {ts_field} = COALESCE({ts_field}, ?)
                WHERE message_id = ? AND status IN ({placeholders})
                """,
                (new_status, at_ms, message_id, *lower),
            )
            changed = cursor.rowcount == 1
        return self.find_by_id(message_id), changed

    def _rewrite_json(self, message_id: str, column: str, mutate) -> Message | None:
        with self._backend.locked() as conn:
            row = conn.execute(f"SELECT {column} FROM messages WHERE message_id = ?", (message_id,)).fetchone()
            if row is None:
                return None
            value = mutate(json.loads(row[0]))
            conn.execute(
                f"UPDATE messages SET {column} = ? WHERE message_id = ?",
                (json.dumps(value, sort_keys=True), message_id),
            )
        return self.find_by_id(message_id)

    def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Message | None:
        return self._rewrite_json(message_id, "reactions_json", lambda reactions: {**reactions, user_id: emoji})

    def remove_reaction(self, message_id: str, user_id: str) -> Message | None:
        return self._rewrite_json(
            message_id,
            "reactions_json",
            lambda reactions: {uid: emoji for uid, emoji in reactions.items() if uid != user_id},
        )

    def soft_delete_for_user(self, message_id: str, user_id: str) -> Message | None:
        return self._rewrite_json(
            message_id, "deleted_for_json", lambda deleted: sorted(set(deleted) | {user_id})
        )

    def soft_delete_for_everyone(self, message_id: str, at_ms: int) -> Message | None:
        with self._backend.locked() as conn:
            conn.execute(
                """
                UPDATE messages SET deleted_for_everyone = 1, deleted_at_ms = ?
                WHERE message_id = ? AND deleted_for_everyone = 0
                """,
                (at_ms, message_id),
            )
        return self.find_by_id(message_id)

    def find_recent_conversations_by_user(self, user_id: str) -> Dict[str, Message]:
        with self._backend.locked() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE sender_id = ? OR receiver_id = ?
                ORDER BY created_at_ms ASC, rowid ASC
                """,
                (user_id, user_id),
            ).fetchall()
        latest: Dict[str, Message] = {}
        for row in rows:
            message = _row_to_message(row)
            peer = message.receiver_id if message.sender_id == user_id else message.sender_id
            latest[peer] = message
        return latest

    def find_undelivered(self, receiver_id: str) -> List[Message]:
        with self._backend.locked() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE receiver_id = ? AND status = ?
                ORDER BY created_at_ms ASC, rowid ASC
                """,
                (receiver_id, STATUS_SENT),
            ).fetchall()
        return [_row_to_message(row) for row in rows]
