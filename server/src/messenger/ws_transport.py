from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from .credentials import DEFAULT_TOKEN_TTL_MS
from .http_api import add_routes
from .runtime import RUNTIME_KEY, WS_CONFIG_KEY, Runtime, build_runtime
from .session import DEFAULT_HISTORY_LIMIT, Authenticate, ConnectionSession

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_CLOSE_CODE = 4001
OUTBOUND_QUEUE_SIZE = 1000


def _error_frame(code: str, message: str) -> dict[str, Any]:
    return {"v": 1, "t": "error", "body": {"code": code, "message": message}}


def _handshake_token(request: web.Request) -> str | None:
    """Bearer token offered on the upgrade request, via ?token= or Authorization."""

    token = request.query.get("token")
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip() or None
    return None


def create_app(
    *,
    db_path: str | None = None,
    runtime: Runtime | None = None,
    auth_timeout_s: float = 10.0,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
    token_ttl_ms: int = DEFAULT_TOKEN_TTL_MS,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    runtime = runtime or build_runtime(db_path=db_path, token_ttl_ms=token_ttl_ms)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "auth_timeout_s": auth_timeout_s,
        "history_limit": history_limit,
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    add_routes(app)
    app.router.add_get("/ws", websocket_handler)

    async def close_websockets(_: web.Application) -> None:
        for ws in list(runtime.websockets.values()):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")

    async def close_runtime(_: web.Application) -> None:
        runtime.close()

    app.on_shutdown.append(close_websockets)
    app.on_cleanup.append(close_runtime)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    connection_id = f"c_{secrets.token_urlsafe(12)}"
    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    closed = False
    pending_closes: set[asyncio.Task] = set()

    async def close_with(code: int, message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=code, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("connection %s outbound queue full, closing", connection_id)
            task = asyncio.create_task(close_with(WSCloseCode.TRY_AGAIN_LATER, "backpressure"))
            pending_closes.add(task)
            task.add_done_callback(pending_closes.discard)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await close_with(WSCloseCode.GOING_AWAY, "heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    session = ConnectionSession(
        connection_id,
        registry=runtime.registry,
        dispatcher=runtime.dispatcher,
        credentials=runtime.credentials,
        deliver=enqueue,
        history_limit=ws_config["history_limit"],
    )

    async def auth_deadline() -> None:
        try:
            await asyncio.wait_for(session.authenticated.wait(), timeout=ws_config["auth_timeout_s"])
        except asyncio.TimeoutError:
            logger.info("connection %s did not authenticate in time", connection_id)
            await close_with(AUTH_TIMEOUT_CLOSE_CODE, "authentication timeout")
        except asyncio.CancelledError:
            return

    runtime.websockets[connection_id] = ws
    logger.info("connection %s opened from %s", connection_id, request.remote)

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    auth_task = asyncio.create_task(auth_deadline())

    try:
        handshake_token = _handshake_token(request)
        if handshake_token is not None:
            await session.handle(Authenticate(handshake_token))

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue
                if frame.get("v", 1) != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if body is None:
                    body = {}

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                if frame_type == "pong":
                    continue
                try:
                    await session.handle_frame(frame_type, body)
                except Exception:
                    # Isolate the failure to this frame; the connection and its peers carry on.
                    logger.exception("connection %s: unhandled error for %r", connection_id, frame_type)
                    enqueue(_error_frame("internal_error", "internal server error"))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await close_with(WSCloseCode.UNSUPPORTED_DATA, "unsupported frame type")
                break
    finally:
        auth_task.cancel()
        heartbeat_task.cancel()
        session.close("disconnect")
        runtime.websockets.pop(connection_id, None)
        writer_task.cancel()
        await asyncio.gather(auth_task, heartbeat_task, writer_task, *pending_closes, return_exceptions=True)

    return ws
