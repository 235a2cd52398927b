"""Websocket chat client with optimistic sends.

Every send is recorded locally as ``sending`` under a client-generated temp
id before it reaches the server. Acknowledgment frames are matched back to
that entry by temp id (or by server id once known) and advance it; an error
frame carrying the temp id marks it ``failed``. A failed entry is retried as
a brand-new send with a fresh temp id.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from . import frames
from .models import (
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_RANK,
    STATUS_READ,
    STATUS_SENDING,
    STATUS_SENT,
)

logger = logging.getLogger(__name__)

_CLIENT_RANK = {STATUS_SENDING: 0, **STATUS_RANK}


class ChatClientError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


def new_temp_id() -> str:
    return f"tmp_{secrets.token_hex(8)}"


@dataclass
class PendingSend:
    temp_id: str
    receiver_id: str
    content: str
    message_type: str = "text"
    status: str = STATUS_SENDING
    server_id: Optional[str] = None
    message: Optional[Dict[str, Any]] = None
    delivered_at_ms: Optional[int] = None
    read_at_ms: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    settled: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    def _settle(self) -> None:
        if self.settled is not None and not self.settled.done():
            self.settled.set_result(self)


class PendingOperations:
    """Local optimistic copies keyed by temp id, reconciled by incoming frames."""

    def __init__(self) -> None:
        self._by_temp: Dict[str, PendingSend] = {}
        self._by_server: Dict[str, PendingSend] = {}

    def add(
        self,
        receiver_id: str,
        content: str,
        message_type: str = "text",
        *,
        temp_id: str | None = None,
    ) -> PendingSend:
        temp_id = temp_id or new_temp_id()
        if temp_id in self._by_temp:
            raise ValueError(f"temp id already pending: {temp_id}")
        entry = PendingSend(temp_id=temp_id, receiver_id=receiver_id, content=content, message_type=message_type)
        try:
            entry.settled = asyncio.get_running_loop().create_future()
        except RuntimeError:
            entry.settled = None
        self._by_temp[temp_id] = entry
        return entry

    def get(self, temp_id: str) -> PendingSend | None:
        return self._by_temp.get(temp_id)

    def by_server_id(self, server_id: str) -> PendingSend | None:
        return self._by_server.get(server_id)

    def entries(self) -> List[PendingSend]:
        return list(self._by_temp.values())

    def _lookup(self, body: Dict[str, Any]) -> PendingSend | None:
        temp_id = body.get("tempId")
        if temp_id:
            entry = self._by_temp.get(temp_id)
            if entry is not None:
                return entry
        server_id = body.get("serverId")
        if server_id:
            return self._by_server.get(server_id)
        return None

    @staticmethod
    def _advance(entry: PendingSend, status: str) -> bool:
        if entry.status == STATUS_FAILED:
            return False
        if _CLIENT_RANK.get(status, -1) <= _CLIENT_RANK[entry.status]:
            return False
        entry.status = status
        return True

    def reconcile(self, frame: Dict[str, Any]) -> List[PendingSend]:
        """Apply one server frame; returns the entries it changed."""

        event = frame.get("t")
        body = frame.get("body") or {}
        changed: List[PendingSend] = []

        if event == frames.MESSAGE_SENT:
            entry = self._by_temp.get(body.get("tempId"))
            if entry is None:
                return changed
            entry.server_id = body.get("serverId")
            entry.message = body.get("message")
            if entry.server_id:
                self._by_server[entry.server_id] = entry
            if self._advance(entry, body.get("status") or STATUS_SENT):
                changed.append(entry)
            entry._settle()
        elif event == frames.MESSAGE_DELIVERED:
            entry = self._lookup(body)
            if entry is None:
                return changed
            if entry.delivered_at_ms is None:
                entry.delivered_at_ms = body.get("deliveredAt")
            if self._advance(entry, STATUS_DELIVERED):
                changed.append(entry)
        elif event == frames.MESSAGES_READ:
            for server_id in body.get("messageIds") or []:
                entry = self._by_server.get(server_id)
                if entry is None:
                    continue
                if entry.read_at_ms is None:
                    entry.read_at_ms = body.get("readAt")
                if self._advance(entry, STATUS_READ):
                    changed.append(entry)
        elif event == frames.ERROR:
            entry = self._by_temp.get(body.get("tempId")) if body.get("tempId") else None
            if entry is None or entry.status != STATUS_SENDING:
                return changed
            entry.status = STATUS_FAILED
            entry.error = {"code": body.get("code"), "message": body.get("message")}
            changed.append(entry)
            entry._settle()
        return changed

    def fail_outstanding(self, reason: str) -> List[PendingSend]:
        failed = []
        for entry in self._by_temp.values():
            if entry.status == STATUS_SENDING:
                entry.status = STATUS_FAILED
                entry.error = {"code": "connection_lost", "message": reason}
                entry._settle()
                failed.append(entry)
        return failed

    def discard(self, temp_id: str) -> None:
        entry = self._by_temp.pop(temp_id, None)
        if entry is not None and entry.server_id:
            self._by_server.pop(entry.server_id, None)


class ChatClient:
    """Thin asyncio client for the ``/v1/ws`` endpoint.

    ``session`` is anything with an aiohttp-style ``ws_connect`` coroutine:
    a ``aiohttp.ClientSession`` with an absolute ``url`` or an
    ``aiohttp.test_utils.TestClient`` with a path.
    """

    def __init__(self, session, user_id: str, *, username: str | None = None, url: str = "/v1/ws") -> None:
        self._session = session
        self.user_id = user_id
        self.username = username
        self.url = url
        self.pending = PendingOperations()
        self.events: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None

    async def connect(self, *, timeout: float = 5.0) -> Dict[str, Any]:
        self._ws = await self._session.ws_connect(self.url)
        body: Dict[str, Any] = {"userId": self.user_id}
        if self.username is not None:
            body["username"] = self.username
        await self._ws.send_json(frames.frame(frames.CONNECT, body, request_id="connect"))
        reply = await self._ws.receive_json(timeout=timeout)
        if reply.get("t") == frames.ERROR:
            error = reply.get("body") or {}
            await self._ws.close()
            raise ChatClientError(str(error.get("code")), str(error.get("message")))
        if reply.get("t") != frames.CONNECTED:
            await self._ws.close()
            raise ChatClientError("invalid_request", f"unexpected handshake reply {reply.get('t')}")
        self._reader_task = asyncio.create_task(self._reader())
        return reply["body"]

    async def _reader(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                        break
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    logger.debug("ignoring malformed frame from server")
                    continue
                if frame.get("t") == frames.PING:
                    await self._ws.send_json(frames.frame(frames.PONG, request_id=frame.get("id")))
                    continue
                self.pending.reconcile(frame)
                await self.events.put(frame)
        finally:
            self.pending.fail_outstanding("connection closed")

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise ChatClientError("not_connected", "client is not connected")
        return self._ws

    async def send_message(
        self,
        receiver_id: str,
        content: str,
        message_type: str = "text",
        *,
        temp_id: str | None = None,
    ) -> PendingSend:
        ws = self._require_ws()
        entry = self.pending.add(receiver_id, content, message_type, temp_id=temp_id)
        try:
            await ws.send_json(
                frames.frame(
                    frames.SEND_MESSAGE,
                    {"receiverId": receiver_id, "content": content, "type": message_type, "tempId": entry.temp_id},
                )
            )
        except ConnectionError as exc:
            self.pending.discard(entry.temp_id)
            raise ChatClientError("not_connected", str(exc)) from exc
        return entry

    async def retry(self, temp_id: str) -> PendingSend:
        entry = self.pending.get(temp_id)
        if entry is None or entry.status != STATUS_FAILED:
            raise ValueError("only failed sends can be retried")
        retried = await self.send_message(entry.receiver_id, entry.content, entry.message_type)
        self.pending.discard(temp_id)
        return retried

    async def wait_settled(self, entry: PendingSend, *, timeout: float = 5.0) -> PendingSend:
        """Wait until the send is acknowledged or rejected."""

        if entry.settled is None:
            return entry
        return await asyncio.wait_for(asyncio.shield(entry.settled), timeout)

    async def mark_as_read(self, message_ids: Iterable[str], sender_id: str) -> None:
        await self._require_ws().send_json(
            frames.frame(frames.MARK_AS_READ, {"messageIds": list(message_ids), "senderId": sender_id})
        )

    async def typing(self, receiver_id: str, is_typing: bool = True) -> None:
        event = frames.TYPING_START if is_typing else frames.TYPING_STOP
        await self._require_ws().send_json(frames.frame(event, {"receiverId": receiver_id}))

    async def next_event(self, event: str | None = None, *, timeout: float = 5.0) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError(f"timed out waiting for {event or 'an event'}")
            frame = await asyncio.wait_for(self.events.get(), remaining)
            if event is None or frame.get("t") == event:
                return frame

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
