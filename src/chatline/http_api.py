"""JSON-over-HTTP surface for accounts, friends, history and settings.

Authentication is a bearer token carrying the user id; an upstream auth
layer is expected to have validated it.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from . import privacy
from .errors import AuthRequired, ChatError, Forbidden, ValidationError
from .models import Friendship, User, friendship_to_wire
from .protocol import user_summary
from .runtime import RUNTIME_KEY, Runtime

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.Response]]

_PROFILE_KEYS = {"username": "username", "email": "email", "avatarUrl": "avatar_url", "bio": "bio"}


def _error_response(exc: ChatError) -> web.Response:
    return web.json_response(exc.to_body(), status=exc.http_status)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _api(handler: Handler) -> Handler:
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.Response:
        try:
            return await handler(request)
        except ChatError as exc:
            if exc.http_status >= 500:
                logger.warning("%s %s failed: %s", request.method, request.path, exc.message)
            return _error_response(exc)

    return wrapper


def _runtime(request: web.Request) -> Runtime:
    return request.app[RUNTIME_KEY]


def _authenticate_request(request: web.Request) -> User:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthRequired("bearer token required")
    user_id = auth_header[len("Bearer ") :].strip()
    user = _runtime(request).identity.find_by_id(user_id) if user_id else None
    if user is None:
        raise AuthRequired("invalid token")
    return user


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("malformed json") from None
    if not isinstance(body, dict):
        raise ValidationError("body must be an object")
    return body


def _public_user(runtime: Runtime, user: User) -> dict[str, Any]:
    raw = {
        "isOnline": runtime.presence.is_online(user.user_id),
        "lastSeen": user.last_seen_ms,
        "avatarUrl": user.avatar_url,
    }
    return {
        "id": user.user_id,
        "username": user.username,
        "bio": user.bio,
        **privacy.project_fields(user.settings.privacy, raw),
    }


def _own_user(runtime: Runtime, user: User) -> dict[str, Any]:
    return {
        "id": user.user_id,
        "username": user.username,
        "email": user.email,
        "avatarUrl": user.avatar_url,
        "bio": user.bio,
        "isOnline": runtime.presence.is_online(user.user_id),
        "lastSeen": user.last_seen_ms,
        "createdAt": user.created_at_ms,
        "settings": _settings_body(user),
    }


def _settings_body(user: User) -> dict[str, Any]:
    return {
        "privacy": user.settings.privacy.to_wire(),
        "notifications": user.settings.notifications.to_wire(),
    }


def _request_with_requester(runtime: Runtime, friendship: Friendship) -> dict[str, Any]:
    body = friendship_to_wire(friendship)
    requester = runtime.identity.find_by_id(friendship.requester_id)
    body["requester"] = user_summary(requester) if requester is not None else None
    return body


@_api
async def handle_register(request: web.Request) -> web.Response:
    body = await _json_body(request)
    user = _runtime(request).accounts.register(
        body.get("username"),
        email=body.get("email"),
        avatar_url=body.get("avatarUrl"),
        bio=body.get("bio") or "",
    )
    return web.json_response({"user": _own_user(_runtime(request), user)}, status=201)


@_api
async def handle_user_search(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    found = runtime.accounts.search(request.query.get("q", ""))
    users = [_public_user(runtime, user) for user in found if user.user_id != me.user_id]
    return web.json_response({"users": users})


@_api
async def handle_user_get(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    user = runtime.accounts.get(request.match_info["user_id"])
    if user.user_id == me.user_id:
        return web.json_response({"user": _own_user(runtime, user)})
    return web.json_response({"user": _public_user(runtime, user)})


@_api
async def handle_profile_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    body = await _json_body(request)
    changes = {field: body[key] for key, field in _PROFILE_KEYS.items() if key in body}
    user = runtime.accounts.update_profile(me.user_id, changes)
    return web.json_response({"user": _own_user(runtime, user)})


@_api
async def handle_friend_request(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    body = await _json_body(request)
    friendship = runtime.friends.request(me.user_id, body.get("username"))
    return web.json_response({"request": friendship_to_wire(friendship)}, status=201)


@_api
async def handle_friend_requests(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    pending = [_request_with_requester(runtime, friendship) for friendship in runtime.friends.pending(me.user_id)]
    return _with_no_store(web.json_response({"requests": pending}))


@_api
async def handle_friend_accept(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    friendship = runtime.friends.accept(request.match_info["request_id"], me.user_id)
    return web.json_response({"friendship": friendship_to_wire(friendship)})


@_api
async def handle_friend_decline(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    runtime.friends.decline(request.match_info["request_id"], me.user_id)
    return web.json_response({"status": "ok"})


@_api
async def handle_friends_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    friends = []
    for friend_id in runtime.friends.friend_ids(me.user_id):
        friend = runtime.identity.find_by_id(friend_id)
        if friend is not None:
            friends.append(_public_user(runtime, friend))
    return _with_no_store(web.json_response({"friends": friends}))


@_api
async def handle_friend_remove(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    runtime.friends.remove(me.user_id, request.match_info["friend_id"])
    return web.json_response({"status": "ok"})


@_api
async def handle_conversations(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    rows = []
    for friend, last in runtime.lifecycle.recent_conversations(me.user_id):
        rows.append(
            {
                "friend": _public_user(runtime, friend),
                "lastMessage": runtime.lifecycle.render(last, me.user_id) if last is not None else None,
            }
        )
    return _with_no_store(web.json_response({"conversations": rows}))


@_api
async def handle_conversation_history(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    friend_id = request.match_info["friend_id"]
    since = request.query.get("since")
    since_ms = None
    if since is not None:
        try:
            since_ms = int(since)
        except ValueError:
            raise ValidationError("since must be an integer timestamp") from None
    runtime.accounts.get(friend_id)
    if not runtime.friends.are_friends(me.user_id, friend_id):
        raise Forbidden("you can only view conversations with friends")
    history = runtime.lifecycle.conversation(me.user_id, friend_id, since_ms)
    messages = [runtime.lifecycle.render(message, me.user_id) for message in history]
    return _with_no_store(web.json_response({"messages": messages}))


@_api
async def handle_react(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    body = await _json_body(request)
    message = runtime.protocol.react(request.match_info["message_id"], me.user_id, body.get("emoji"))
    return web.json_response({"message": runtime.lifecycle.render(message, me.user_id)})


@_api
async def handle_unreact(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    message = runtime.protocol.unreact(request.match_info["message_id"], me.user_id)
    return web.json_response({"message": runtime.lifecycle.render(message, me.user_id)})


@_api
async def handle_delete_for_me(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    runtime.protocol.delete_for_user(request.match_info["message_id"], me.user_id)
    return web.json_response({"status": "ok"})


@_api
async def handle_delete_for_everyone(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    message = runtime.protocol.delete_for_everyone(request.match_info["message_id"], me.user_id)
    return web.json_response({"message": runtime.lifecycle.render(message, me.user_id)})


@_api
async def handle_settings_get(request: web.Request) -> web.Response:
    me = _authenticate_request(request)
    return _with_no_store(web.json_response(_settings_body(me)))


@_api
async def handle_privacy_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    body = await _json_body(request)
    user = runtime.accounts.update_privacy(me.user_id, body)
    runtime.protocol.privacy_changed(me.user_id)
    return web.json_response({"privacy": user.settings.privacy.to_wire()})


@_api
async def handle_notifications_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    body = await _json_body(request)
    user = runtime.accounts.update_notifications(me.user_id, body)
    return web.json_response({"notifications": user.settings.notifications.to_wire()})


@_api
async def handle_block(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    target_id = request.match_info["user_id"]
    runtime.accounts.block(me.user_id, target_id)
    return web.json_response({"status": "ok", "blockedUserId": target_id})


@_api
async def handle_unblock(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    target_id = request.match_info["user_id"]
    runtime.accounts.unblock(me.user_id, target_id)
    return web.json_response({"status": "ok", "unblockedUserId": target_id})


@_api
async def handle_block_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    blocked = [user_summary(user) for user in runtime.accounts.blocked_users(me.user_id)]
    return _with_no_store(web.json_response({"blockedUsers": blocked}))


@_api
async def handle_block_check(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    me = _authenticate_request(request)
    return web.json_response(runtime.accounts.block_status(me.user_id, request.match_info["user_id"]))


def add_routes(app: web.Application) -> None:
    router = app.router
    router.add_post("/v1/users", handle_register)
    # search must be registered before the {user_id} route
    router.add_get("/v1/users/search", handle_user_search)
    router.add_put("/v1/users/profile", handle_profile_update)
    router.add_get("/v1/users/{user_id}", handle_user_get)

    router.add_post("/v1/friends/request", handle_friend_request)
    router.add_get("/v1/friends/requests", handle_friend_requests)
    router.add_post("/v1/friends/requests/{request_id}/accept", handle_friend_accept)
    router.add_post("/v1/friends/requests/{request_id}/decline", handle_friend_decline)
    router.add_get("/v1/friends", handle_friends_list)
    router.add_delete("/v1/friends/{friend_id}", handle_friend_remove)

    router.add_get("/v1/messages/conversations", handle_conversations)
    router.add_get("/v1/messages/conversation/{friend_id}", handle_conversation_history)
    router.add_post("/v1/messages/{message_id}/react", handle_react)
    router.add_delete("/v1/messages/{message_id}/react", handle_unreact)
    router.add_post("/v1/messages/{message_id}/delete-for-me", handle_delete_for_me)
    router.add_post("/v1/messages/{message_id}/delete-for-everyone", handle_delete_for_everyone)

    router.add_get("/v1/settings", handle_settings_get)
    router.add_post("/v1/settings/privacy", handle_privacy_update)
    router.add_post("/v1/settings/notifications", handle_notifications_update)

    router.add_get("/v1/block", handle_block_list)
    router.add_get("/v1/block/{user_id}", handle_block_check)
    router.add_post("/v1/block/{user_id}", handle_block)
    router.add_post("/v1/unblock/{user_id}", handle_unblock)
