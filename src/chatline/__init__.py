"""Real-time one-to-one chat server core."""

from .config import ServerConfig
from .errors import (
    AuthRequired,
    Blocked,
    ChatError,
    Conflict,
    DuplicateKey,
    Expired,
    Forbidden,
    NotFound,
    TransientIO,
    ValidationError,
)
from .lifecycle import MessageLifecycle
from .models import conversation_id
from .presence import PresenceTable
from .protocol import DeliveryProtocol

__all__ = [
    "AuthRequired",
    "Blocked",
    "ChatError",
    "Conflict",
    "DeliveryProtocol",
    "DuplicateKey",
    "Expired",
    "Forbidden",
    "MessageLifecycle",
    "NotFound",
    "PresenceTable",
    "ServerConfig",
    "TransientIO",
    "ValidationError",
    "conversation_id",
]
