from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from . import frames, privacy
from .errors import TransientIO
from .util import now_ms

logger = logging.getLogger(__name__)

Handle = Callable[[dict], None]


@dataclass
class PresenceEntry:
    handle: Optional[Handle]
    is_online: bool
    last_seen_ms: int
    connection_ref: Optional[str] = None


class PresenceTable:
    """Process-wide map of user -> live connection handle.

    A handle is any callable accepting one outbound frame. Only the most
    recently registered handle per user is authoritative for delivery.
    """

    def __init__(self, identity, friendships, *, now_func=now_ms) -> None:
        self._identity = identity
        self._friendships = friendships
        self._now = now_func
        self._entries: Dict[str, PresenceEntry] = {}

    def register(self, user_id: str, handle: Handle, *, connection_ref: str | None = None) -> PresenceEntry:
        entry = PresenceEntry(handle=handle, is_online=True, last_seen_ms=self._now(), connection_ref=connection_ref)
        self._entries[user_id] = entry
        self._persist(user_id, entry)
        self._broadcast(user_id, entry)
        return entry

    def unregister(self, user_id: str, handle: Handle | None = None) -> PresenceEntry | None:
        entry = self._entries.get(user_id)
        if entry is None or not entry.is_online:
            return entry
        if handle is not None and entry.handle is not handle:
            # an older duplicate connection closing; the newer one stays authoritative
            return entry
        entry = PresenceEntry(handle=None, is_online=False, last_seen_ms=self._now())
        self._entries[user_id] = entry
        self._persist(user_id, entry)
        self._broadcast(user_id, entry)
        return entry

    def lookup(self, user_id: str) -> Handle | None:
        entry = self._entries.get(user_id)
        if entry is None or not entry.is_online:
            return None
        return entry.handle

    def is_online(self, user_id: str) -> bool:
        return self.lookup(user_id) is not None

    def entry(self, user_id: str) -> PresenceEntry | None:
        return self._entries.get(user_id)

    def online_count(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.is_online)

    def push(self, user_id: str, frame: dict) -> bool:
        """Best-effort delivery to the user's live handle; a stale handle is skipped."""

        handle = self.lookup(user_id)
        if handle is None:
            return False
        try:
            handle(frame)
        except Exception:
            logger.debug("dropping %s for %s: stale connection", frame.get("t"), user_id, exc_info=True)
            return False
        return True

    def broadcast_to_friends(self, user_id: str, frame_for: Callable[[], dict]) -> int:
        """Push ``frame_for()`` to every accepted friend holding a live connection."""

        delivered = 0
        try:
            friendships = self._friendships.find_accepted(user_id)
        except TransientIO:
            logger.warning("presence broadcast for %s skipped: store unavailable", user_id, exc_info=True)
            return 0
        frame = None
        for friendship in friendships:
            friend_id = friendship.other(user_id)
            if not self.is_online(friend_id):
                continue
            if frame is None:
                frame = frame_for()
            if self.push(friend_id, frame):
                delivered += 1
        return delivered

    def _persist(self, user_id: str, entry: PresenceEntry) -> None:
        try:
            self._identity.update_online_status(user_id, entry.is_online, entry.connection_ref, entry.last_seen_ms)
        except TransientIO:
            logger.warning("could not persist presence for %s", user_id, exc_info=True)

    def _broadcast(self, user_id: str, entry: PresenceEntry) -> None:
        try:
            owner = self._identity.find_by_id(user_id)
        except TransientIO:
            logger.warning("presence broadcast for %s skipped: store unavailable", user_id, exc_info=True)
            return
        if owner is None:
            return

        def status_frame() -> dict:
            raw = {"isOnline": entry.is_online, "lastSeen": entry.last_seen_ms}
            visible = privacy.project_fields(owner.settings.privacy, raw)
            return frames.frame(
                frames.FRIEND_STATUS_CHANGED,
                {"userId": user_id, "username": owner.username, **visible},
            )

        self.broadcast_to_friends(user_id, status_frame)
