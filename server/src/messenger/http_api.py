"""Thin request/response handlers for accounts, friends and message history."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from .credentials import validate_phone
from .errors import AlreadyFriends, InvalidCredential, InvalidRequest, MessengerError, NotFound
from .models import User
from .runtime import RUNTIME_KEY

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_PAGE = 100
MAX_HISTORY_PAGE = 500


def _error_response(exc: MessengerError) -> web.Response:
    return web.json_response({"code": exc.code, "message": exc.message}, status=exc.status)


def _unauthorized() -> web.Response:
    return _error_response(InvalidCredential("missing or invalid bearer token"))


def _invalid_request(message: str) -> web.Response:
    return _error_response(InvalidRequest(message))


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidRequest("malformed json") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("json object required")
    return body


async def _authenticate_request(request: web.Request) -> User | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer ") :].strip()
    try:
        return await asyncio.to_thread(runtime.credentials.verify, token)
    except InvalidCredential:
        return None


async def handle_health(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    return web.json_response({"status": "ok", "online": len(runtime.registry.online_users())})


async def handle_register(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    try:
        body = await _json_body(request)
        user = await asyncio.to_thread(
            runtime.credentials.register, body.get("name"), body.get("phone"), body.get("password")
        )
    except MessengerError as exc:
        return _error_response(exc)
    return web.json_response({"user": user.to_api_dict()}, status=201)


async def handle_login(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    try:
        body = await _json_body(request)
        token, user = await asyncio.to_thread(runtime.credentials.login, body.get("phone"), body.get("password"))
    except MessengerError as exc:
        return _error_response(exc)
    logger.info("user %s logged in", user.id)
    return web.json_response({"token": token, "user": user.to_api_dict()})


async def handle_me(request: web.Request) -> web.Response:
    user = await _authenticate_request(request)
    if user is None:
        return _unauthorized()
    return web.json_response({"user": user.to_api_dict()})


async def handle_friends(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = await _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        friends = await asyncio.to_thread(runtime.store.list_friends, user.id)
    except MessengerError as exc:
        return _error_response(exc)
    return web.json_response({"friends": [friend.to_api_dict() for friend in friends]})


async def handle_add_friend(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = await _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        body = await _json_body(request)
        phone = validate_phone(body.get("phone"))
        if phone == user.phone:
            raise InvalidRequest("cannot add yourself as a friend")
        friend = await asyncio.to_thread(runtime.store.find_user_by_phone, phone)
        if friend is None:
            raise NotFound("no user with that phone number")
        if await asyncio.to_thread(runtime.store.are_friends, user.id, friend.id):
            raise AlreadyFriends()
        await asyncio.to_thread(runtime.store.add_friendship, user.id, friend.id)
    except MessengerError as exc:
        return _error_response(exc)
    logger.info("friendship created between %s and %s", user.id, friend.id)
    return web.json_response({"friend": friend.to_api_dict()})


async def handle_history(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = await _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        friend_id = int(request.match_info["friend_id"])
    except ValueError:
        return _invalid_request("friend_id must be an integer")
    raw_limit = request.query.get("limit")
    if raw_limit is None:
        limit = DEFAULT_HISTORY_PAGE
    else:
        try:
            limit = int(raw_limit)
        except ValueError:
            return _invalid_request("limit must be an integer")
        if limit < 1:
            return _invalid_request("limit must be positive")
        limit = min(limit, MAX_HISTORY_PAGE)
    try:
        messages = await asyncio.to_thread(runtime.store.history, user.id, friend_id, limit)
    except MessengerError as exc:
        return _error_response(exc)
    return web.json_response({"messages": [message.to_api_dict() for message in messages]})


def add_routes(app: web.Application) -> None:
    app.router.add_get("/api/health", handle_health)
    app.router.add_post("/api/auth/register", handle_register)
    app.router.add_post("/api/auth/login", handle_login)
    app.router.add_get("/api/auth/me", handle_me)
    app.router.add_get("/api/friends", handle_friends)
    app.router.add_post("/api/friends/add", handle_add_friend)
    app.router.add_get("/api/messages/{friend_id}", handle_history)
