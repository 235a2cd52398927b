from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List

from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import (
    FRIENDSHIP_ACCEPTED,
    FRIENDSHIP_PENDING,
    Friendship,
    conversation_id,
    friendship_from_record,
    friendship_to_record,
)
from .sqlite_backend import SQLiteBackend
from .util import new_id, now_ms

logger = logging.getLogger(__name__)


def _pair_key(user_a: str, user_b: str) -> str:
    return conversation_id(user_a, user_b)


class InMemoryFriendshipStore:
    def __init__(self) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._by_pair: Dict[str, str] = {}

    def create(self, requester_id: str, target_id: str, *, at_ms: int) -> Friendship:
        key = _pair_key(requester_id, target_id)
        if key in self._by_pair:
            raise Conflict("relationship already exists")
        friendship = Friendship(
            friendship_id=new_id("f"),
            requester_id=requester_id,
            target_id=target_id,
            status=FRIENDSHIP_PENDING,
            created_at_ms=at_ms,
            updated_at_ms=at_ms,
        )
        self._records[friendship.friendship_id] = friendship_to_record(friendship)
        self._by_pair[key] = friendship.friendship_id
        return friendship_from_record(self._records[friendship.friendship_id])

    def find_by_id(self, friendship_id: str) -> Friendship | None:
        record = self._records.get(friendship_id)
        return friendship_from_record(record) if record is not None else None

    def find_by_pair(self, user_a: str, user_b: str) -> Friendship | None:
        friendship_id = self._by_pair.get(_pair_key(user_a, user_b))
        return self.find_by_id(friendship_id) if friendship_id else None

    def find_pending(self, for_user_id: str) -> List[Friendship]:
        return self._select(
            lambda r: r["target_id"] == for_user_id and r["status"] == FRIENDSHIP_PENDING
        )

    def find_accepted(self, for_user_id: str) -> List[Friendship]:
        return self._select(
            lambda r: for_user_id in (r["requester_id"], r["target_id"]) and r["status"] == FRIENDSHIP_ACCEPTED
        )

    def _select(self, predicate) -> List[Friendship]:
        records = sorted((r for r in self._records.values() if predicate(r)), key=lambda r: r["created_at_ms"])
        return [friendship_from_record(r) for r in records]

    def update_status(self, friendship_id: str, status: str, *, at_ms: int) -> Friendship | None:
        record = self._records.get(friendship_id)
        if record is None:
            return None
        record["status"] = status
        record["updated_at_ms"] = at_ms
        return friendship_from_record(record)

    def delete(self, friendship_id: str) -> bool:
        record = self._records.pop(friendship_id, None)
        if record is None:
            return False
        self._by_pair.pop(_pair_key(record["requester_id"], record["target_id"]), None)
        return True


_FRIENDSHIP_COLUMNS = "friendship_id, requester_id, target_id, status, created_at_ms, updated_at_ms"


class SQLiteFriendshipStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def create(self, requester_id: str, target_id: str, *, at_ms: int) -> Friendship:
        friendship = Friendship(
            friendship_id=new_id("f"),
            requester_id=requester_id,
            target_id=target_id,
            status=FRIENDSHIP_PENDING,
            created_at_ms=at_ms,
            updated_at_ms=at_ms,
        )
        record = friendship_to_record(friendship)
        with self._backend.locked() as conn:
            try:
                conn.execute(
                    f"INSERT INTO friendships ({_FRIENDSHIP_COLUMNS}, pair_key) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        record["friendship_id"],
                        record["requester_id"],
                        record["target_id"],
                        record["status"],
                        record["created_at_ms"],
                        record["updated_at_ms"],
                        _pair_key(requester_id, target_id),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict("relationship already exists") from exc
        return friendship_from_record(record)

    def _fetch(self, where: str, params: tuple) -> List[Friendship]:
        with self._backend.locked() as conn:
            rows = conn.execute(
                f"SELECT {_FRIENDSHIP_COLUMNS} FROM friendships WHERE {where} ORDER BY created_at_ms ASC, rowid ASC",
                params,
            ).fetchall()
        return [friendship_from_record(dict(row)) for row in rows]

    def find_by_id(self, friendship_id: str) -> Friendship | None:
        rows = self._fetch("friendship_id = ?", (friendship_id,))
        return rows[0] if rows else None

    def find_by_pair(self, user_a: str, user_b: str) -> Friendship | None:
        rows = self._fetch("pair_key = ?", (_pair_key(user_a, user_b),))
        return rows[0] if rows else None

    def find_pending(self, for_user_id: str) -> List[Friendship]:
        return self._fetch("target_id = ? AND status = ?", (for_user_id, FRIENDSHIP_PENDING))

    def find_accepted(self, for_user_id: str) -> List[Friendship]:
        return self._fetch(
            "(requester_id = ? OR target_id = ?) AND status = ?", (for_user_id, for_user_id, FRIENDSHIP_ACCEPTED)
        )

    def update_status(self, friendship_id: str, status: str, *, at_ms: int) -> Friendship | None:
        with self._backend.locked() as conn:
            conn.execute(
                "UPDATE friendships SET status = ?, updated_at_ms = ? WHERE friendship_id = ?",
                (status, at_ms, friendship_id),
            )
        return self.find_by_id(friendship_id)

    def delete(self, friendship_id: str) -> bool:
        with self._backend.locked() as conn:
            cursor = conn.execute("DELETE FROM friendships WHERE friendship_id = ?", (friendship_id,))
            return cursor.rowcount == 1


class FriendshipService:
    """Friend request state machine: pending -> accepted, or pending -> deleted."""

    def __init__(self, identity, friendships, *, now_func=now_ms) -> None:
        self.identity = identity
        self.friendships = friendships
        self._now = now_func

    def request(self, requester_id: str, target_username: str) -> Friendship:
        if not isinstance(target_username, str) or not target_username.strip():
            raise ValidationError("friend username is required")
        target = self.identity.find_by_username(target_username)
        if target is None:
            raise NotFound("user not found")
        if target.user_id == requester_id:
            raise ValidationError("you cannot add yourself")

        existing = self.friendships.find_by_pair(requester_id, target.user_id)
        if existing is not None:
            if existing.status == FRIENDSHIP_ACCEPTED:
                raise Conflict("you are already friends")
            raise Conflict("friend request already sent")

        friendship = self.friendships.create(requester_id, target.user_id, at_ms=self._now())
        logger.info("friend request %s: %s -> %s", friendship.friendship_id, requester_id, target.user_id)
        return friendship

    def _require_target(self, request_id: str, actor_id: str) -> Friendship:
        friendship = self.friendships.find_by_id(request_id)
        if friendship is None:
            raise NotFound("friend request not found")
        if friendship.target_id != actor_id:
            raise Forbidden("not authorized")
        return friendship

    def accept(self, request_id: str, actor_id: str) -> Friendship:
        friendship = self._require_target(request_id, actor_id)
        if friendship.status != FRIENDSHIP_PENDING:
            raise Conflict("friend request is not pending")
        return self.friendships.update_status(request_id, FRIENDSHIP_ACCEPTED, at_ms=self._now())

    def decline(self, request_id: str, actor_id: str) -> None:
        friendship = self._require_target(request_id, actor_id)
        if friendship.status != FRIENDSHIP_PENDING:
            raise Conflict("friend request is not pending")
        self.friendships.delete(request_id)

    def remove(self, user_id: str, friend_id: str) -> None:
        friendship = self.friendships.find_by_pair(user_id, friend_id)
        if friendship is None or friendship.status != FRIENDSHIP_ACCEPTED:
            raise NotFound("friendship not found")
        self.friendships.delete(friendship.friendship_id)
        logger.info("friendship %s removed by %s", friendship.friendship_id, user_id)

    def are_friends(self, user_a: str, user_b: str) -> bool:
        friendship = self.friendships.find_by_pair(user_a, user_b)
        return friendship is not None and friendship.status == FRIENDSHIP_ACCEPTED

    def friends(self, user_id: str) -> List[Friendship]:
        return self.friendships.find_accepted(user_id)

    def friend_ids(self, user_id: str) -> List[str]:
        return [friendship.other(user_id) for friendship in self.friendships.find_accepted(user_id)]

    def pending(self, user_id: str) -> List[Friendship]:
        return self.friendships.find_pending(user_id)
