from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import TransientIO

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies chatline migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @contextmanager
    def locked(self) -> Iterator[sqlite3.Connection]:
        """Serialise access to the connection; a busy or broken database surfaces as TransientIO."""

        with self._lock:
            try:
                yield self._conn
            except sqlite3.OperationalError as exc:
                raise TransientIO(f"database unavailable: {exc}") from exc

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                username_key TEXT NOT NULL UNIQUE,
                email TEXT,
                email_key TEXT UNIQUE,
                credential_hash TEXT NOT NULL DEFAULT '',
                avatar_url TEXT,
                bio TEXT NOT NULL DEFAULT '',
                is_online INTEGER NOT NULL DEFAULT 0,
                last_seen_ms INTEGER,
                connection_ref TEXT,
                blocked_json TEXT NOT NULL DEFAULT '[]',
                settings_json TEXT NOT NULL DEFAULT '{}',
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS friendships (
                friendship_id TEXT PRIMARY KEY,
                requester_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                pair_key TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                content TEXT NOT NULL,
                message_type TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                status TEXT NOT NULL,
                delivered_at_ms INTEGER,
                read_at_ms INTEGER,
                reactions_json TEXT NOT NULL DEFAULT '{}',
                deleted_for_json TEXT NOT NULL DEFAULT '[]',
                deleted_for_everyone INTEGER NOT NULL DEFAULT 0,
                deleted_at_ms INTEGER
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, created_at_ms)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_receiver_status ON messages (receiver_id, status)"
        )
