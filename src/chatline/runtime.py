from __future__ import annotations

from aiohttp import web

from .config import ServerConfig
from .friendships import FriendshipService, InMemoryFriendshipStore, SQLiteFriendshipStore
from .identity import Accounts, InMemoryIdentityStore, SQLiteIdentityStore
from .lifecycle import MessageLifecycle
from .messages import InMemoryMessageStore, SQLiteMessageStore
from .presence import PresenceTable
from .protocol import DeliveryProtocol
from .sqlite_backend import SQLiteBackend
from .util import now_ms


class Runtime:
    def __init__(
        self,
        *,
        config: ServerConfig,
        identity,
        friendships,
        messages,
        backend: SQLiteBackend | None = None,
        now_func=now_ms,
    ) -> None:
        self.config = config
        self.identity = identity
        self.friendships = friendships
        self.messages = messages
        self.backend = backend
        self.accounts = Accounts(identity, now_func=now_func)
        self.friends = FriendshipService(identity, friendships, now_func=now_func)
        self.presence = PresenceTable(identity, friendships, now_func=now_func)
        self.lifecycle = MessageLifecycle(
            identity,
            friendships,
            messages,
            now_func=now_func,
            delete_window_ms=config.delete_window_ms,
        )
        self.protocol = DeliveryProtocol(
            self.presence,
            self.lifecycle,
            identity,
            confirm_delivery_on_connect=config.confirm_delivery_on_connect,
        )

    def close(self) -> None:
        if self.backend is not None:
            self.backend.close()


def build_runtime(config: ServerConfig | None = None, *, now_func=now_ms) -> Runtime:
    """Wire stores and services; SQLite-backed when ``config.db_path`` is set."""

    config = config or ServerConfig()
    backend: SQLiteBackend | None = None
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        identity = SQLiteIdentityStore(backend)
        friendships = SQLiteFriendshipStore(backend)
        messages = SQLiteMessageStore(backend)
    else:
        identity = InMemoryIdentityStore()
        friendships = InMemoryFriendshipStore()
        messages = InMemoryMessageStore()
    return Runtime(
        config=config,
        identity=identity,
        friendships=friendships,
        messages=messages,
        backend=backend,
        now_func=now_func,
    )


RUNTIME_KEY = web.AppKey("runtime", Runtime)
