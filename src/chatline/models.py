"""Domain entities and their store-record / wire mappings.

Stores persist plain versioned records (``{"v": 1, ...}``) and hand back
fresh entities built by the ``*_from_record`` functions; no entity instance is
ever shared between a store and its caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Set

RECORD_VERSION = 1

MESSAGE_TYPES = ("text", "image", "file")

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"

# Server-side statuses only ever move up this ranking.
STATUS_RANK = {STATUS_SENT: 1, STATUS_DELIVERED: 2, STATUS_READ: 3}

FRIENDSHIP_PENDING = "pending"
FRIENDSHIP_ACCEPTED = "accepted"


def conversation_id(user_a: str, user_b: str) -> str:
    """Order-independent key for the message log between two users."""

    return "-".join(sorted((user_a, user_b)))


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class PrivacySettings:
    online_status: bool = True
    last_seen: bool = True
    profile_photo: bool = True
    read_receipts: bool = True
    typing_indicator: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PrivacySettings":
        return cls(**_flags_from_mapping(cls, data))

    def to_wire(self) -> dict[str, bool]:
        return {camel_case(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class NotificationSettings:
    message_notifications: bool = True
    friend_requests: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "NotificationSettings":
        return cls(**_flags_from_mapping(cls, data))

    def to_wire(self) -> dict[str, bool]:
        return {camel_case(f.name): getattr(self, f.name) for f in fields(self)}


def _flags_from_mapping(cls, data: Mapping[str, Any] | None) -> dict[str, bool]:
    """Accept snake_case or camelCase keys; unknown keys are ignored, absent ones default."""

    values: dict[str, bool] = {}
    if not data:
        return values
    for f in fields(cls):
        for key in (f.name, camel_case(f.name)):
            if key in data and data[key] is not None:
                values[f.name] = bool(data[key])
                break
    return values


@dataclass
class UserSettings:
    privacy: PrivacySettings = field(default_factory=PrivacySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)


@dataclass
class User:
    user_id: str
    username: str
    email: Optional[str] = None
    credential_hash: str = ""
    avatar_url: Optional[str] = None
    bio: str = ""
    is_online: bool = False
    last_seen_ms: Optional[int] = None
    connection_ref: Optional[str] = None
    blocked_users: Set[str] = field(default_factory=set)
    settings: UserSettings = field(default_factory=UserSettings)
    created_at_ms: int = 0

    def has_blocked(self, other_user_id: str) -> bool:
        return other_user_id in self.blocked_users


@dataclass
class Friendship:
    friendship_id: str
    requester_id: str
    target_id: str
    status: str
    created_at_ms: int
    updated_at_ms: int

    def other(self, user_id: str) -> str:
        return self.target_id if user_id == self.requester_id else self.requester_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.target_id)


@dataclass
class Message:
    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: str
    created_at_ms: int
    status: str = STATUS_SENT
    delivered_at_ms: Optional[int] = None
    read_at_ms: Optional[int] = None
    reactions: Dict[str, str] = field(default_factory=dict)
    deleted_for: Set[str] = field(default_factory=set)
    deleted_for_everyone: bool = False
    deleted_at_ms: Optional[int] = None

    @property
    def conversation_id(self) -> str:
        return conversation_id(self.sender_id, self.receiver_id)

    def participants(self) -> tuple[str, str]:
        return self.sender_id, self.receiver_id


def _check_version(record: Mapping[str, Any], kind: str) -> None:
    version = record.get("v", RECORD_VERSION)
    if version != RECORD_VERSION:
        raise ValueError(f"unsupported {kind} record version: {version}")


def user_to_record(user: User) -> dict[str, Any]:
    return {
        "v": RECORD_VERSION,
        "user_id": user.user_id,
        "username": user.username,
        "email": user.email,
        "credential_hash": user.credential_hash,
        "avatar_url": user.avatar_url,
        "bio": user.bio,
        "is_online": user.is_online,
        "last_seen_ms": user.last_seen_ms,
        "connection_ref": user.connection_ref,
        "blocked_users": sorted(user.blocked_users),
        "settings": {
            "privacy": {f.name: getattr(user.settings.privacy, f.name) for f in fields(PrivacySettings)},
            "notifications": {
                f.name: getattr(user.settings.notifications, f.name) for f in fields(NotificationSettings)
            },
        },
        "created_at_ms": user.created_at_ms,
    }


def user_from_record(record: Mapping[str, Any]) -> User:
    _check_version(record, "user")
    settings = record.get("settings") or {}
    return User(
        user_id=record["user_id"],
        username=record["username"],
        email=record.get("email"),
        credential_hash=record.get("credential_hash") or "",
        avatar_url=record.get("avatar_url"),
        bio=record.get("bio") or "",
        is_online=bool(record.get("is_online", False)),
        last_seen_ms=record.get("last_seen_ms"),
        connection_ref=record.get("connection_ref"),
        blocked_users=set(record.get("blocked_users") or ()),
        settings=UserSettings(
            privacy=PrivacySettings.from_mapping(settings.get("privacy")),
            notifications=NotificationSettings.from_mapping(settings.get("notifications")),
        ),
        created_at_ms=int(record.get("created_at_ms") or 0),
    )


def friendship_to_record(friendship: Friendship) -> dict[str, Any]:
    return {
        "v": RECORD_VERSION,
        "friendship_id": friendship.friendship_id,
        "requester_id": friendship.requester_id,
        "target_id": friendship.target_id,
        "status": friendship.status,
        "created_at_ms": friendship.created_at_ms,
        "updated_at_ms": friendship.updated_at_ms,
    }


def friendship_from_record(record: Mapping[str, Any]) -> Friendship:
    _check_version(record, "friendship")
    return Friendship(
        friendship_id=record["friendship_id"],
        requester_id=record["requester_id"],
        target_id=record["target_id"],
        status=record["status"],
        created_at_ms=int(record["created_at_ms"]),
        updated_at_ms=int(record.get("updated_at_ms") or record["created_at_ms"]),
    )


def message_to_record(message: Message) -> dict[str, Any]:
    return {
        "v": RECORD_VERSION,
        "message_id": message.message_id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "content": message.content,
        "message_type": message.message_type,
        "created_at_ms": message.created_at_ms,
        "status": message.status,
        "delivered_at_ms": message.delivered_at_ms,
        "read_at_ms": message.read_at_ms,
        "reactions": dict(message.reactions),
        "deleted_for": sorted(message.deleted_for),
        "deleted_for_everyone": message.deleted_for_everyone,
        "deleted_at_ms": message.deleted_at_ms,
    }


def message_from_record(record: Mapping[str, Any]) -> Message:
    _check_version(record, "message")
    return Message(
        message_id=record["message_id"],
        sender_id=record["sender_id"],
        receiver_id=record["receiver_id"],
        content=record["content"],
        message_type=record.get("message_type") or "text",
        created_at_ms=int(record["created_at_ms"]),
        status=record.get("status") or STATUS_SENT,
        delivered_at_ms=record.get("delivered_at_ms"),
        read_at_ms=record.get("read_at_ms"),
        reactions=dict(record.get("reactions") or {}),
        deleted_for=set(record.get("deleted_for") or ()),
        deleted_for_everyone=bool(record.get("deleted_for_everyone", False)),
        deleted_at_ms=record.get("deleted_at_ms"),
    )


def message_to_wire(message: Message) -> dict[str, Any]:
    return {
        "id": message.message_id,
        "senderId": message.sender_id,
        "receiverId": message.receiver_id,
        "conversationId": message.conversation_id,
        "content": message.content,
        "type": message.message_type,
        "createdAt": message.created_at_ms,
        "status": message.status,
        "deliveredAt": message.delivered_at_ms,
        "readAt": message.read_at_ms,
        "reactions": dict(message.reactions),
        "deletedFor": sorted(message.deleted_for),
        "isDeletedForEveryone": message.deleted_for_everyone,
    }


def friendship_to_wire(friendship: Friendship) -> dict[str, Any]:
    return {
        "id": friendship.friendship_id,
        "userId": friendship.requester_id,
        "friendId": friendship.target_id,
        "status": friendship.status,
        "createdAt": friendship.created_at_ms,
    }
