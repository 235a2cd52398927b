from __future__ import annotations

from typing import Any

from .errors import ChatError

PROTOCOL_VERSION = 1

# client -> server
CONNECT = "connect"
SEND_MESSAGE = "send-message"
MARK_AS_READ = "mark-as-read"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"
PING = "ping"
PONG = "pong"

# server -> client
CONNECTED = "connected"
MESSAGE_SENT = "message-sent"
NEW_MESSAGE = "new-message"
MESSAGE_DELIVERED = "message-delivered"
MESSAGES_READ = "messages-read"
USER_TYPING = "user-typing"
FRIEND_STATUS_CHANGED = "friend-status-changed"
FRIEND_PRIVACY_CHANGED = "friend-privacy-changed"
MESSAGE_REACTION = "message-reaction"
MESSAGE_REACTION_REMOVED = "message-reaction-removed"
MESSAGE_DELETED_EVERYONE = "message-deleted-everyone"
ERROR = "error"


def frame(event: str, body: dict[str, Any] | None = None, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": event, "id": request_id, "body": body or {}}


def error_frame(code: str, message: str, *, request_id: str | None = None, **extra: Any) -> dict[str, Any]:
    return frame(ERROR, {"code": code, "message": message, **extra}, request_id=request_id)


def error_frame_from(exc: ChatError, *, request_id: str | None = None, **extra: Any) -> dict[str, Any]:
    return frame(ERROR, {**exc.to_body(), **extra}, request_id=request_id)
