from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from .errors import Conflict, DuplicateKey, NotFound, ValidationError
from .models import (
    NotificationSettings,
    PrivacySettings,
    User,
    camel_case,
    user_from_record,
    user_to_record,
)
from .sqlite_backend import SQLiteBackend
from .util import new_id, now_ms

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("username", "email", "avatar_url", "bio")
MAX_USERNAME_LEN = 32


def _key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


class InMemoryIdentityStore:
    """Identity store keeping one versioned record per user."""

    def __init__(self) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._by_username: Dict[str, str] = {}
        self._by_email: Dict[str, str] = {}

    def create(self, user: User) -> User:
        username_key = _key(user.username)
        email_key = _key(user.email)
        if username_key in self._by_username:
            raise DuplicateKey("username already taken")
        if email_key is not None and email_key in self._by_email:
            raise DuplicateKey("email already registered")
        self._records[user.user_id] = user_to_record(user)
        self._by_username[username_key] = user.user_id
        if email_key is not None:
            self._by_email[email_key] = user.user_id
        return user_from_record(self._records[user.user_id])

    def find_by_id(self, user_id: str) -> User | None:
        record = self._records.get(user_id)
        return user_from_record(record) if record is not None else None

    def find_by_username(self, username: str) -> User | None:
        user_id = self._by_username.get(_key(username) or "")
        return self.find_by_id(user_id) if user_id else None

    def find_by_username_or_email(self, identifier: str) -> User | None:
        user = self.find_by_username(identifier)
        if user is not None:
            return user
        user_id = self._by_email.get(_key(identifier) or "")
        return self.find_by_id(user_id) if user_id else None

    def update_profile(self, user_id: str, **changes: Any) -> User | None:
        record = self._records.get(user_id)
        if record is None:
            return None
        if "username" in changes:
            new_key = _key(changes["username"])
            owner = self._by_username.get(new_key)
            if owner is not None and owner != user_id:
                raise DuplicateKey("username already taken")
            self._by_username.pop(_key(record["username"]), None)
            self._by_username[new_key] = user_id
        if "email" in changes:
            new_key = _key(changes["email"])
            owner = self._by_email.get(new_key) if new_key else None
            if owner is not None and owner != user_id:
                raise DuplicateKey("email already registered")
            old_key = _key(record.get("email"))
            if old_key is not None:
                self._by_email.pop(old_key, None)
            if new_key is not None:
                self._by_email[new_key] = user_id
        for name in PROFILE_FIELDS:
            if name in changes:
                record[name] = changes[name]
        return user_from_record(record)

    def update_privacy_settings(self, user_id: str, privacy: PrivacySettings) -> User | None:
        return self._update_settings(user_id, "privacy", user_to_record_settings(privacy))

    def update_notification_settings(self, user_id: str, notifications: NotificationSettings) -> User | None:
        return self._update_settings(user_id, "notifications", user_to_record_settings(notifications))

    def _update_settings(self, user_id: str, section: str, values: dict[str, bool]) -> User | None:
        record = self._records.get(user_id)
        if record is None:
            return None
        settings = record.setdefault("settings", {})
        settings[section] = values
        return user_from_record(record)

    def update_online_status(
        self, user_id: str, is_online: bool, connection_ref: str | None, last_seen_ms: int
    ) -> User | None:
        record = self._records.get(user_id)
        if record is None:
            return None
        record["is_online"] = is_online
        record["connection_ref"] = connection_ref
        record["last_seen_ms"] = last_seen_ms
        return user_from_record(record)

    def add_blocked(self, user_id: str, target_id: str) -> bool:
        record = self._records[user_id]
        blocked = record["blocked_users"]
        if target_id in blocked:
            return False
        record["blocked_users"] = sorted([*blocked, target_id])
        return True

    def remove_blocked(self, user_id: str, target_id: str) -> bool:
        record = self._records[user_id]
        blocked = record["blocked_users"]
        if target_id not in blocked:
            return False
        record["blocked_users"] = [b for b in blocked if b != target_id]
        return True

    def search(self, prefix: str, limit: int = 10) -> List[User]:
        needle = _key(prefix) or ""
        matches = sorted(
            (record for record in self._records.values() if record["username"].lower().startswith(needle)),
            key=lambda record: record["username"].lower(),
        )
        return [user_from_record(record) for record in matches[: max(limit, 0)]]


def user_to_record_settings(section: PrivacySettings | NotificationSettings) -> dict[str, bool]:
    return {name: bool(value) for name, value in vars(section).items()}


_USER_COLUMNS = (
    "user_id, username, email, credential_hash, avatar_url, bio, is_online, last_seen_ms, "
    "connection_ref, blocked_json, settings_json, created_at_ms"
)


def _row_to_user(row: sqlite3.Row) -> User:
    record = dict(row)
    record["blocked_users"] = json.loads(record.pop("blocked_json") or "[]")
    record["settings"] = json.loads(record.pop("settings_json") or "{}")
    return user_from_record(record)


class SQLiteIdentityStore:
    """Durable identity store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def create(self, user: User) -> User:
        record = user_to_record(user)
        with self._backend.locked() as conn:
            try:
                conn.execute(
                    f"""
                    INSERT INTO users ({_USER_COLUMNS}, username_key, email_key)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record["user_id"],
                        record["username"],
                        record["email"],
                        record["credential_hash"],
                        record["avatar_url"],
                        record["bio"],
                        int(record["is_online"]),
                        record["last_seen_ms"],
                        record["connection_ref"],
                        json.dumps(record["blocked_users"]),
                        json.dumps(record["settings"], sort_keys=True),
                        record["created_at_ms"],
                        _key(record["username"]),
                        _key(record["email"]),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey("username or email already registered") from exc
        return user_from_record(record)

    def _fetch_one(self, where: str, params: tuple) -> User | None:
        with self._backend.locked() as conn:
            row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE {where}", params).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: str) -> User | None:
        return self._fetch_one("user_id = ?", (user_id,))

    def find_by_username(self, username: str) -> User | None:
        return self._fetch_one("username_key = ?", (_key(username) or "",))

    def find_by_username_or_email(self, identifier: str) -> User | None:
        key = _key(identifier) or ""
        return self._fetch_one("username_key = ? OR email_key = ? ORDER BY username_key = ? DESC LIMIT 1", (key, key, key))

    def update_profile(self, user_id: str, **changes: Any) -> User | None:
        assignments: list[str] = []
        params: list[Any] = []
        for name in PROFILE_FIELDS:
            if name in changes:
                assignments.append(f"{name} = ?")
                params.append(changes[name])
                if name in ("username", "email"):
                    assignments.append(f"{name}_key = ?")
                    params.append(_key(changes[name]))
        if assignments:
            with self._backend.locked() as conn:
                try:
                    conn.execute(f"UPDATE users SET {', '.join(assignments)} WHERE user_id = ?", (*params, user_id))
                except sqlite3.IntegrityError as exc:
                    raise DuplicateKey("username or email already registered") from exc
        return self.find_by_id(user_id)

    def update_privacy_settings(self, user_id: str, privacy: PrivacySettings) -> User | None:
        return self._update_settings(user_id, "privacy", user_to_record_settings(privacy))

    def update_notification_settings(self, user_id: str, notifications: NotificationSettings) -> User | None:
        return self._update_settings(user_id, "notifications", user_to_record_settings(notifications))

    def _update_settings(self, user_id: str, section: str, values: dict[str, bool]) -> User | None:
        with self._backend.locked() as conn:
            row = conn.execute("SELECT settings_json FROM users WHERE user_id = ?", (user_id,)).fetchone()
            if row is None:
                return None
            settings = json.loads(row[0] or "{}")
            settings[section] = values
            conn.execute(
                "UPDATE users SET settings_json = ? WHERE user_id = ?",
                (json.dumps(settings, sort_keys=True), user_id),
            )
        return self.find_by_id(user_id)

    def update_online_status(
        self, user_id: str, is_online: bool, connection_ref: str | None, last_seen_ms: int
    ) -> User | None:
        with self._backend.locked() as conn:
            conn.execute(
                "UPDATE users SET is_online = ?, connection_ref = ?, last_seen_ms = ? WHERE user_id = ?",
                (int(is_online), connection_ref, last_seen_ms, user_id),
            )
        return self.find_by_id(user_id)

    def _mutate_blocked(self, user_id: str, target_id: str, add: bool) -> bool:
        with self._backend.locked() as conn:
            row = conn.execute("SELECT blocked_json FROM users WHERE user_id = ?", (user_id,)).fetchone()
            if row is None:
                raise KeyError(user_id)
            blocked = set(json.loads(row[0] or "[]"))
            if (target_id in blocked) == add:
                return False
            if add:
                blocked.add(target_id)
            else:
                blocked.discard(target_id)
            conn.execute(
                "UPDATE users SET blocked_json = ? WHERE user_id = ?", (json.dumps(sorted(blocked)), user_id)
            )
        return True

    def add_blocked(self, user_id: str, target_id: str) -> bool:
        return self._mutate_blocked(user_id, target_id, add=True)

    def remove_blocked(self, user_id: str, target_id: str) -> bool:
        return self._mutate_blocked(user_id, target_id, add=False)

    def search(self, prefix: str, limit: int = 10) -> List[User]:
        needle = (_key(prefix) or "").replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._backend.locked() as conn:
            rows = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM users
                WHERE username_key LIKE ? ESCAPE '\\'
                ORDER BY username_key ASC
                LIMIT ?
                """,
                (needle + "%", max(limit, 0)),
            ).fetchall()
        return [_row_to_user(row) for row in rows]


class Accounts:
    """Registration, profile, settings and blocklist operations over an identity store."""

    def __init__(self, identity, *, now_func=now_ms) -> None:
        self.identity = identity
        self._now = now_func

    def register(
        self,
        username: str,
        *,
        email: str | None = None,
        credential_hash: str = "",
        avatar_url: str | None = None,
        bio: str = "",
    ) -> User:
        if not isinstance(username, str) or not username.strip():
            raise ValidationError("username required")
        if len(username.strip()) > MAX_USERNAME_LEN:
            raise ValidationError(f"username longer than {MAX_USERNAME_LEN} characters")
        if email is not None and (not isinstance(email, str) or "@" not in email):
            raise ValidationError("invalid email")
        user = User(
            user_id=new_id("u"),
            username=username.strip(),
            email=email.strip().lower() if email else None,
            credential_hash=credential_hash,
            avatar_url=avatar_url,
            bio=bio,
            last_seen_ms=self._now(),
            created_at_ms=self._now(),
        )
        created = self.identity.create(user)
        logger.info("registered user %s (%s)", created.username, created.user_id)
        return created

    def get(self, user_id: str) -> User:
        user = self.identity.find_by_id(user_id)
        if user is None:
            raise NotFound("user not found")
        return user

    def update_profile(self, user_id: str, changes: Mapping[str, Any]) -> User:
        self.get(user_id)
        clean = {name: changes[name] for name in PROFILE_FIELDS if name in changes}
        if "username" in clean and (not isinstance(clean["username"], str) or not clean["username"].strip()):
            raise ValidationError("username must not be empty")
        if "username" in clean:
            clean["username"] = clean["username"].strip()
        updated = self.identity.update_profile(user_id, **clean)
        return updated

    def update_privacy(self, user_id: str, changes: Mapping[str, Any] | None) -> User:
        user = self.get(user_id)
        merged = {**vars(user.settings.privacy), **_explicit(changes, PrivacySettings)}
        return self.identity.update_privacy_settings(user_id, PrivacySettings(**merged))

    def update_notifications(self, user_id: str, changes: Mapping[str, Any] | None) -> User:
        user = self.get(user_id)
        merged = {**vars(user.settings.notifications), **_explicit(changes, NotificationSettings)}
        return self.identity.update_notification_settings(user_id, NotificationSettings(**merged))

    def search(self, query: str, limit: int = 10) -> List[User]:
        if not isinstance(query, str) or not query.strip():
            return []
        return self.identity.search(query.strip(), limit)

    def block(self, user_id: str, target_id: str) -> None:
        if user_id == target_id:
            raise ValidationError("cannot block yourself")
        self.get(user_id)
        self.get(target_id)
        if not self.identity.add_blocked(user_id, target_id):
            raise Conflict("user already blocked")
        logger.info("user %s blocked %s", user_id, target_id)

    def unblock(self, user_id: str, target_id: str) -> None:
        self.get(user_id)
        if not self.identity.remove_blocked(user_id, target_id):
            raise Conflict("user is not blocked")

    def blocked_users(self, user_id: str) -> List[User]:
        user = self.get(user_id)
        found = (self.identity.find_by_id(blocked_id) for blocked_id in sorted(user.blocked_users))
        return [blocked for blocked in found if blocked is not None]

    def block_status(self, user_id: str, other_id: str) -> dict[str, bool]:
        user = self.get(user_id)
        other = self.get(other_id)
        return {"isBlocked": user.has_blocked(other_id), "isBlockedBy": other.has_blocked(user_id)}


def _explicit(changes: Mapping[str, Any] | None, cls) -> dict[str, bool]:
    """Only the flags the caller actually named, so unnamed flags keep their stored value."""

    if not changes:
        return {}
    explicit: dict[str, bool] = {}
    for name in vars(cls()):
        for key in (name, camel_case(name)):
            if key not in changes:
                continue
            value = changes[key]
            if not isinstance(value, bool):
                raise ValidationError(f"{camel_case(name)} must be a boolean")
            explicit[name] = value
            break
    return explicit
