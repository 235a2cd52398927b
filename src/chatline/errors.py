from __future__ import annotations

from typing import Any


class ChatError(Exception):
    """Structured rejection surfaced to the caller as a code + message."""

    code = "error"
    http_status = 500

    def __init__(self, message: str = "", **extra: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(ChatError):
    code = "invalid_request"
    http_status = 400


class AuthRequired(ChatError):
    code = "auth_required"
    http_status = 401


class Forbidden(ChatError):
    code = "forbidden"
    http_status = 403


class Blocked(Forbidden):
    code = "blocked"


class Expired(Forbidden):
    code = "expired"


class NotFound(ChatError):
    code = "not_found"
    http_status = 404


class Conflict(ChatError):
    code = "conflict"
    http_status = 409


class DuplicateKey(Conflict):
    code = "duplicate_key"


class TransientIO(ChatError):
    """Store unavailable; safe to retry since writes are single-row."""

    code = "unavailable"
    http_status = 503
