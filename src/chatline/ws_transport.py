from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from . import frames, http_api
from .config import ServerConfig
from .errors import AuthRequired, ChatError, NotFound, ValidationError
from .runtime import RUNTIME_KEY, Runtime, build_runtime
from .util import new_id, now_ms

logger = logging.getLogger(__name__)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(config: ServerConfig | None = None, *, now_func=now_ms) -> web.Application:
    runtime = build_runtime(config, now_func=now_func)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    http_api.add_routes(app)

    async def close_db(_: web.Application) -> None:
        runtime.close()

    app.on_cleanup.append(close_db)
    return app


def _dispatch(runtime: Runtime, user_id: str, frame_type: Any, body: dict, enqueue) -> None:
    protocol = runtime.protocol
    if frame_type == frames.SEND_MESSAGE:
        protocol.send_message(user_id, body, enqueue)
    elif frame_type == frames.MARK_AS_READ:
        protocol.mark_as_read(user_id, body)
    elif frame_type == frames.TYPING_START:
        protocol.typing(user_id, body, True)
    elif frame_type == frames.TYPING_STOP:
        protocol.typing(user_id, body, False)
    else:
        raise ValidationError("unknown frame type")


def _authenticate(runtime: Runtime, payload: Any) -> str:
    if not isinstance(payload, dict) or payload.get("t") != frames.CONNECT:
        raise AuthRequired("first frame must be connect")
    if payload.get("v") != frames.PROTOCOL_VERSION:
        raise ValidationError("unsupported version")
    body = payload.get("body") or {}
    if not isinstance(body, dict):
        raise ValidationError("body must be an object")
    user_id = body.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise AuthRequired("userId required")
    user = runtime.identity.find_by_id(user_id)
    if user is None:
        raise NotFound("user not found")
    username = body.get("username")
    if username is not None and username != user.username:
        raise AuthRequired("username does not match")
    return user_id


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=config.outbound_queue_size)
    user_id: str | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        logger.warning("closing connection for %s: %s", user_id, message)
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        if closed:
            raise ConnectionResetError("connection closing")
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))
            raise

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("writer for %s stopped: connection reset", user_id)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    await ws.send_json(frames.frame(frames.PING))
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        logger.info("heartbeat timeout for %s", user_id)
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        request_id = payload.get("id") if isinstance(payload, dict) else None
        try:
            authenticated = _authenticate(runtime, payload)
        except ChatError as exc:
            logger.info("rejected websocket handshake: %s", exc.message)
            await ws.send_json(frames.error_frame_from(exc, request_id=request_id))
            await ws.close()
            return ws

        mark_activity()
        user_id = authenticated
        runtime.protocol.connect(user_id, enqueue, connection_ref=new_id("c"))
        enqueue(
            frames.frame(
                frames.CONNECTED,
                {"userId": user_id, "onlineCount": runtime.presence.online_count()},
                request_id=request_id,
            )
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(frames.error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(frames.error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != frames.PROTOCOL_VERSION:
                    enqueue(frames.error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == frames.PING:
                    enqueue(frames.frame(frames.PONG, request_id=request_id))
                    continue
                if frame_type == frames.PONG:
                    continue
                if not isinstance(body, dict):
                    enqueue(frames.error_frame("invalid_request", "body must be an object", request_id=request_id))
                    continue
                try:
                    _dispatch(runtime, user_id, frame_type, body, enqueue)
                except ChatError as exc:
                    enqueue(frames.error_frame_from(exc, request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    except (asyncio.QueueFull, ConnectionResetError):
        logger.debug("connection for %s dropped while replying", user_id)
    finally:
        heartbeat_task.cancel()
        writer_task.cancel()
        if user_id is not None:
            runtime.protocol.disconnect(user_id, enqueue)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            pass
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
