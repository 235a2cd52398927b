from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from .errors import Blocked, Expired, Forbidden, NotFound, ValidationError
from .models import (
    FRIENDSHIP_ACCEPTED,
    MESSAGE_TYPES,
    STATUS_DELIVERED,
    STATUS_READ,
    STATUS_SENT,
    Message,
    User,
    conversation_id,
    message_to_wire,
)
from .util import new_id, now_ms

logger = logging.getLogger(__name__)

DELETED_PLACEHOLDER = "This message was deleted"
DEFAULT_DELETE_WINDOW_MS = 2 * 60 * 1000
MAX_CONTENT_LEN = 10_000


class MessageLifecycle:
    """Validates, persists and advances messages: sent -> delivered -> read.

    Every transition is a conditional single-record update in the store, so
    repeated or re-ordered acknowledgments never move a message backwards and
    never overwrite a timestamp that is already set.
    """

    def __init__(
        self,
        identity,
        friendships,
        messages,
        *,
        now_func=now_ms,
        delete_window_ms: int = DEFAULT_DELETE_WINDOW_MS,
    ) -> None:
        self.identity = identity
        self.friendships = friendships
        self.messages = messages
        self._now = now_func
        self.delete_window_ms = delete_window_ms

    def _user(self, user_id: str) -> User:
        user = self.identity.find_by_id(user_id)
        if user is None:
            raise NotFound("user not found")
        return user

    def _message(self, message_id: str) -> Message:
        message = self.messages.find_by_id(message_id)
        if message is None:
            raise NotFound("message not found")
        return message

    def get(self, message_id: str) -> Message:
        return self._message(message_id)

    def check_can_message(self, sender: User, receiver: User) -> None:
        if sender.has_blocked(receiver.user_id) or receiver.has_blocked(sender.user_id):
            raise Blocked("cannot send message to this user")
        friendship = self.friendships.find_by_pair(sender.user_id, receiver.user_id)
        if friendship is None or friendship.status != FRIENDSHIP_ACCEPTED:
            raise Forbidden("you can only message friends")

    def send(self, sender_id: str, receiver_id: str, content: Any, message_type: str = "text") -> Message:
        if not isinstance(receiver_id, str) or not receiver_id:
            raise ValidationError("receiverId required")
        if receiver_id == sender_id:
            raise ValidationError("cannot message yourself")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content required")
        if len(content) > MAX_CONTENT_LEN:
            raise ValidationError(f"content longer than {MAX_CONTENT_LEN} characters")
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"type must be one of {', '.join(MESSAGE_TYPES)}")

        sender = self._user(sender_id)
        receiver = self._user(receiver_id)
        self.check_can_message(sender, receiver)

        message = Message(
            message_id=new_id("m"),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=message_type,
            created_at_ms=self._now(),
            status=STATUS_SENT,
        )
        stored = self.messages.create_message(message)
        logger.debug("message %s stored in %s", stored.message_id, stored.conversation_id)
        return stored

    def mark_delivered(self, message_id: str) -> Tuple[Message, bool]:
        message, changed = self.messages.update_status(message_id, STATUS_DELIVERED, self._now())
        if message is None:
            raise NotFound("message not found")
        return message, changed

    def mark_read(self, message_id: str, reader_id: str) -> Tuple[Message, bool]:
        message = self._message(message_id)
        if message.receiver_id != reader_id:
            raise Forbidden("only the receiver can mark a message as read")
        message, changed = self.messages.update_status(message_id, STATUS_READ, self._now())
        if message is None:
            raise NotFound("message not found")
        return message, changed

    def react(self, message_id: str, user_id: str, emoji: Any) -> Message:
        if not isinstance(emoji, str) or not emoji.strip():
            raise ValidationError("emoji is required")
        message = self.messages.add_reaction(message_id, user_id, emoji.strip())
        if message is None:
            raise NotFound("message not found")
        return message

    def unreact(self, message_id: str, user_id: str) -> Message:
        message = self.messages.remove_reaction(message_id, user_id)
        if message is None:
            raise NotFound("message not found")
        return message

    def delete_for_user(self, message_id: str, user_id: str) -> Message:
        message = self.messages.soft_delete_for_user(message_id, user_id)
        if message is None:
            raise NotFound("message not found")
        return message

    def delete_for_everyone(self, message_id: str, requester_id: str) -> Message:
        message = self._message(message_id)
        if message.sender_id != requester_id:
            raise Forbidden("you can only delete your own messages")
        if message.deleted_for_everyone:
            return message
        now = self._now()
        if now - message.created_at_ms >= self.delete_window_ms:
            raise Expired(
                f"messages can only be deleted within {self.delete_window_ms // 60_000} minutes of sending"
            )
        deleted = self.messages.soft_delete_for_everyone(message_id, now)
        logger.info("message %s deleted for everyone by %s", message_id, requester_id)
        return deleted

    def conversation(self, viewer_id: str, peer_id: str, since_ms: int | None = None) -> List[Message]:
        self._user(peer_id)
        history = self.messages.find_by_conversation_id(conversation_id(viewer_id, peer_id), since_ms)
        return [message for message in history if viewer_id not in message.deleted_for]

    def recent_conversations(self, user_id: str) -> List[Tuple[User, Optional[Message]]]:
        latest = self.messages.find_recent_conversations_by_user(user_id)
        rows: List[Tuple[User, Optional[Message], int]] = []
        for friendship in self.friendships.find_accepted(user_id):
            friend = self.identity.find_by_id(friendship.other(user_id))
            if friend is None:
                continue
            last = latest.get(friend.user_id)
            activity = last.created_at_ms if last is not None else friendship.created_at_ms
            rows.append((friend, last, activity))
        rows.sort(key=lambda row: row[2], reverse=True)
        return [(friend, last) for friend, last, _ in rows]

    def undelivered_for(self, receiver_id: str) -> List[Message]:
        return self.messages.find_undelivered(receiver_id)

    @staticmethod
    def render(message: Message, viewer_id: str | None = None) -> dict[str, Any]:
        """Wire view of ``message``; content of a global tombstone is never sent out."""

        wire = message_to_wire(message)
        if message.deleted_for_everyone:
            wire["content"] = DELETED_PLACEHOLDER
        if viewer_id is not None:
            wire["isDeletedForMe"] = viewer_id in message.deleted_for
        return wire
