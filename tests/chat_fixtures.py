from __future__ import annotations

from typing import List

from chatline.friendships import FriendshipService, InMemoryFriendshipStore
from chatline.identity import Accounts, InMemoryIdentityStore
from chatline.lifecycle import MessageLifecycle
from chatline.messages import InMemoryMessageStore
from chatline.presence import PresenceTable
from chatline.protocol import DeliveryProtocol


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class Recorder:
    """Connection handle that keeps every frame pushed to it."""

    def __init__(self) -> None:
        self.frames: List[dict] = []

    def __call__(self, frame: dict) -> None:
        self.frames.append(frame)

    def of_type(self, event: str) -> List[dict]:
        return [frame for frame in self.frames if frame["t"] == event]

    def types(self) -> List[str]:
        return [frame["t"] for frame in self.frames]

    def clear(self) -> None:
        self.frames.clear()


class BrokenHandle:
    def __call__(self, frame: dict) -> None:
        raise ConnectionResetError("socket gone")


class World:
    """In-memory stores and services sharing one fake clock."""

    def __init__(self, clock: FakeClock | None = None, *, confirm_delivery_on_connect: bool = False) -> None:
        self.clock = clock or FakeClock()
        self.identity = InMemoryIdentityStore()
        self.friendships = InMemoryFriendshipStore()
        self.messages = InMemoryMessageStore()
        self.accounts = Accounts(self.identity, now_func=self.clock.now)
        self.friends = FriendshipService(self.identity, self.friendships, now_func=self.clock.now)
        self.presence = PresenceTable(self.identity, self.friendships, now_func=self.clock.now)
        self.lifecycle = MessageLifecycle(self.identity, self.friendships, self.messages, now_func=self.clock.now)
        self.protocol = DeliveryProtocol(
            self.presence,
            self.lifecycle,
            self.identity,
            confirm_delivery_on_connect=confirm_delivery_on_connect,
        )

    def user(self, username: str, **kwargs):
        return self.accounts.register(username, **kwargs)

    def befriend(self, user_a, user_b):
        request = self.friends.request(user_a.user_id, user_b.username)
        return self.friends.accept(request.friendship_id, user_b.user_id)
