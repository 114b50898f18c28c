"""Command line entry point: run the messenger server or replay scripted frames."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Iterable, TextIO

from aiohttp import web

from .config import ServerConfig, load_config_from_env
from .errors import InvalidRequest, MessengerError, NotFound
from .runtime import Runtime, build_runtime
from .session import Authenticate, ConnectionSession
from .ws_transport import create_app

logger = logging.getLogger(__name__)


async def _simulate(frames: Iterable[dict], output: TextIO, runtime: Runtime) -> None:
    sessions: dict[str, ConnectionSession] = {}

    def emit(conn: str | None, frame: dict) -> None:
        line = {"conn": conn, "t": frame.get("t"), "body": frame.get("body")}
        output.write(json.dumps(line, sort_keys=True) + "\n")

    def session_for(conn: str) -> ConnectionSession:
        if conn not in sessions:
            sessions[conn] = ConnectionSession(
                conn,
                registry=runtime.registry,
                dispatcher=runtime.dispatcher,
                credentials=runtime.credentials,
                deliver=lambda frame, conn=conn: emit(conn, frame),
            )
        return sessions[conn]

    for frame in frames:
        conn = frame.get("conn")
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        try:
            if frame_type == "register":
                user = runtime.credentials.register(body.get("name"), body.get("phone"), body.get("password"))
                emit(conn, {"t": "registered", "body": user.to_api_dict()})
            elif frame_type == "add_friend":
                user_id = body.get("userId")
                if isinstance(user_id, bool) or not isinstance(user_id, int):
                    raise InvalidRequest("userId must be an integer user id")
                friend = runtime.store.find_user_by_phone(body.get("phone"))
                if friend is None:
                    raise NotFound(f"no user with phone {body.get('phone')}")
                if friend.id == user_id:
                    raise InvalidRequest("cannot add yourself as a friend")
                runtime.store.add_friendship(user_id, friend.id)
                emit(conn, {"t": "friend_added", "body": friend.to_api_dict()})
            elif frame_type == "login":
                token, _ = runtime.credentials.login(body.get("phone"), body.get("password"))
                await session_for(conn).handle(Authenticate(token))
            elif frame_type == "disconnect":
                session_for(conn).close("disconnect")
                sessions.pop(conn, None)
            else:
                await session_for(conn).handle_frame(frame_type, body)
        except MessengerError as exc:
            emit(conn, {"t": "error", "body": {"code": exc.code, "message": exc.message}})


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Drive an in-memory messenger core with JSON frames and print outbound frames."""

    runtime = build_runtime()
    try:
        asyncio.run(_simulate(frames, output, runtime))
    finally:
        runtime.close()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _config_from_args(args: argparse.Namespace, base: ServerConfig) -> ServerConfig:
    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.auth_timeout is not None:
        overrides["auth_timeout_s"] = args.auth_timeout
    if args.log_level is not None:
        overrides["log_level"] = args.log_level.upper()
    return replace(base, **overrides)


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_from_args(args, load_config_from_env())
    logging.basicConfig(
        level=config.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(
        db_path=config.db_path,
        auth_timeout_s=config.auth_timeout_s,
        history_limit=config.history_limit,
        token_ttl_ms=config.token_ttl_ms,
        ping_interval_s=config.ping_interval_s,
    )
    logger.info("starting messenger on %s:%d", config.host, config.port)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="messenger", description="One-to-one real-time messenger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames through an in-memory core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp messenger server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (MESSENGER_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (MESSENGER_PORT)")
    serve_parser.add_argument("--db", type=str, default=None, help="SQLite database path (MESSENGER_DB_PATH)")
    serve_parser.add_argument(
        "--auth-timeout",
        type=float,
        default=None,
        help="Seconds a connection may stay unauthenticated (MESSENGER_AUTH_TIMEOUT_S)",
    )
    serve_parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Log level (MESSENGER_LOG_LEVEL)",
    )
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
