from __future__ import annotations

import logging
from typing import Any, Callable, List, Mapping

from . import frames, privacy
from .errors import ChatError, Forbidden, NotFound, ValidationError
from .lifecycle import MessageLifecycle
from .models import Message, User
from .presence import Handle, PresenceEntry, PresenceTable

logger = logging.getLogger(__name__)

Reply = Callable[[dict], None]


def user_summary(user: User) -> dict[str, Any]:
    """Public card for ``user`` as seen by someone else."""

    return {
        "id": user.user_id,
        "username": user.username,
        "avatarUrl": privacy.project(user.settings.privacy, {"avatarUrl": user.avatar_url}, "avatarUrl"),
    }


def _require_str(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} required")
    return value


class DeliveryProtocol:
    """Couples the lifecycle engine to live connections.

    Pushes are at-most-once: a frame for a user without a live connection is
    dropped, and the message simply stays in its last confirmed status.
    """

    def __init__(
        self,
        presence: PresenceTable,
        lifecycle: MessageLifecycle,
        identity,
        *,
        confirm_delivery_on_connect: bool = False,
    ) -> None:
        self.presence = presence
        self.lifecycle = lifecycle
        self.identity = identity
        self.confirm_delivery_on_connect = confirm_delivery_on_connect

    def connect(self, user_id: str, handle: Handle, *, connection_ref: str | None = None) -> PresenceEntry:
        entry = self.presence.register(user_id, handle, connection_ref=connection_ref)
        logger.info("user %s connected (%d online)", user_id, self.presence.online_count())
        if self.confirm_delivery_on_connect:
            self._confirm_pending_deliveries(user_id)
        return entry

    def disconnect(self, user_id: str, handle: Handle | None = None) -> None:
        self.presence.unregister(user_id, handle)
        logger.info("user %s disconnected (%d online)", user_id, self.presence.online_count())

    def _notifications_enabled(self, user: User | None) -> bool:
        return user is not None and user.settings.notifications.message_notifications

    def send_message(self, sender_id: str, body: Mapping[str, Any], reply: Reply) -> Message:
        temp_id = body.get("tempId")
        try:
            if not isinstance(temp_id, str) or not temp_id:
                raise ValidationError("tempId required")
            message = self.lifecycle.send(
                sender_id, body.get("receiverId"), body.get("content"), body.get("type") or "text"
            )
        except ChatError as exc:
            logger.info("send from %s rejected: %s (%s)", sender_id, exc.code, exc.message)
            exc.extra.setdefault("tempId", temp_id)
            raise

        reply(
            frames.frame(
                frames.MESSAGE_SENT,
                {
                    "tempId": temp_id,
                    "serverId": message.message_id,
                    "status": message.status,
                    "message": self.lifecycle.render(message),
                },
            )
        )

        receiver = self.identity.find_by_id(message.receiver_id)
        if not self.presence.is_online(message.receiver_id) or not self._notifications_enabled(receiver):
            logger.debug("message %s left as sent: receiver offline or muted", message.message_id)
            return message

        sender = self.identity.find_by_id(sender_id)
        pushed = self.presence.push(
            message.receiver_id,
            frames.frame(
                frames.NEW_MESSAGE,
                {"message": self.lifecycle.render(message), "senderSummary": user_summary(sender)},
            ),
        )
        if not pushed:
            logger.debug("message %s left as sent: receiver connection is stale", message.message_id)
            return message

        delivered, _ = self.lifecycle.mark_delivered(message.message_id)
        reply(
            frames.frame(
                frames.MESSAGE_DELIVERED,
                {"tempId": temp_id, "serverId": delivered.message_id, "deliveredAt": delivered.delivered_at_ms},
            )
        )
        return delivered

    def mark_as_read(self, reader_id: str, body: Mapping[str, Any]) -> List[str]:
        """Mark the batch read; returns the ids whose status actually changed."""

        message_ids = body.get("messageIds")
        if not isinstance(message_ids, list) or any(not isinstance(mid, str) for mid in message_ids):
            raise ValidationError("messageIds must be a list of ids")
        sender_id = _require_str(body, "senderId")

        changed_ids: List[str] = []
        read_at = None
        for message_id in dict.fromkeys(message_ids):
            try:
                message = self.lifecycle.get(message_id)
                if message.sender_id != sender_id:
                    continue
                updated, changed = self.lifecycle.mark_read(message_id, reader_id)
            except (NotFound, Forbidden) as exc:
                logger.debug("skipping read receipt for %s: %s", message_id, exc.message)
                continue
            if changed:
                changed_ids.append(message_id)
                read_at = updated.read_at_ms

        if not changed_ids:
            return changed_ids
        reader = self.identity.find_by_id(reader_id)
        if reader is not None and privacy.allows(reader.settings.privacy, "readReceipts"):
            self.presence.push(
                sender_id,
                frames.frame(
                    frames.MESSAGES_READ,
                    {"messageIds": changed_ids, "readAt": read_at, "readBy": reader_id},
                ),
            )
        return changed_ids

    def typing(self, user_id: str, body: Mapping[str, Any], is_typing: bool) -> bool:
        receiver_id = _require_str(body, "receiverId")
        sender = self.identity.find_by_id(user_id)
        receiver = self.identity.find_by_id(receiver_id)
        if sender is None or receiver is None:
            return False
        if not privacy.allows(sender.settings.privacy, "typingIndicator"):
            return False
        if sender.has_blocked(receiver_id) or receiver.has_blocked(user_id):
            return False
        return self.presence.push(
            receiver_id,
            frames.frame(
                frames.USER_TYPING, {"userId": user_id, "username": sender.username, "isTyping": is_typing}
            ),
        )

    def _push_to_participants(self, message: Message, frame: dict) -> None:
        for user_id in dict.fromkeys(message.participants()):
            self.presence.push(user_id, frame)

    def react(self, message_id: str, user_id: str, emoji: Any) -> Message:
        message = self.lifecycle.react(message_id, user_id, emoji)
        self._push_to_participants(
            message,
            frames.frame(
                frames.MESSAGE_REACTION,
                {
                    "messageId": message_id,
                    "userId": user_id,
                    "emoji": message.reactions.get(user_id),
                    "reactions": dict(message.reactions),
                },
            ),
        )
        return message

    def unreact(self, message_id: str, user_id: str) -> Message:
        message = self.lifecycle.unreact(message_id, user_id)
        self._push_to_participants(
            message,
            frames.frame(
                frames.MESSAGE_REACTION_REMOVED,
                {"messageId": message_id, "userId": user_id, "reactions": dict(message.reactions)},
            ),
        )
        return message

    def delete_for_user(self, message_id: str, user_id: str) -> Message:
        return self.lifecycle.delete_for_user(message_id, user_id)

    def delete_for_everyone(self, message_id: str, requester_id: str) -> Message:
        message = self.lifecycle.delete_for_everyone(message_id, requester_id)
        self._push_to_participants(
            message,
            frames.frame(
                frames.MESSAGE_DELETED_EVERYONE,
                {"messageId": message_id, "conversationId": message.conversation_id},
            ),
        )
        return message

    def privacy_changed(self, user_id: str) -> int:
        user = self.identity.find_by_id(user_id)
        if user is None:
            return 0
        entry = self.presence.entry(user_id)
        last_seen = entry.last_seen_ms if entry is not None else user.last_seen_ms
        raw = {"isOnline": self.presence.is_online(user_id), "lastSeen": last_seen}

        def privacy_frame() -> dict:
            return frames.frame(
                frames.FRIEND_PRIVACY_CHANGED,
                {
                    "userId": user_id,
                    "username": user.username,
                    "privacy": user.settings.privacy.to_wire(),
                    **privacy.project_fields(user.settings.privacy, raw),
                },
            )

        return self.presence.broadcast_to_friends(user_id, privacy_frame)

    def _confirm_pending_deliveries(self, user_id: str) -> None:
        receiver = self.identity.find_by_id(user_id)
        if not self._notifications_enabled(receiver):
            return
        for message in self.lifecycle.undelivered_for(user_id):
            delivered, changed = self.lifecycle.mark_delivered(message.message_id)
            if not changed:
                continue
            self.presence.push(
                delivered.sender_id,
                frames.frame(
                    frames.MESSAGE_DELIVERED,
                    {"tempId": None, "serverId": delivered.message_id, "deliveredAt": delivered.delivered_at_ms},
                ),
            )
