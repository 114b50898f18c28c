from __future__ import annotations

import logging
import os
from dataclasses import dataclass

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001
    db_path: str | None = None
    auth_timeout_s: float = 10.0
    history_limit: int = 50
    token_ttl_s: int = 30 * 24 * 60 * 60
    ping_interval_s: int = 30
    log_level: str = "INFO"

    @property
    def token_ttl_ms(self) -> int:
        return self.token_ttl_s * 1000

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env() -> ServerConfig:
    port = _parse_non_negative_int("MESSENGER_PORT", 3001)
    if port > 65535:
        raise ValueError("MESSENGER_PORT must be at most 65535")
    history_limit = _parse_non_negative_int("MESSENGER_HISTORY_LIMIT", 50)
    return ServerConfig(
        host=os.environ.get("MESSENGER_HOST") or "127.0.0.1",
        port=port,
        db_path=os.environ.get("MESSENGER_DB_PATH") or None,
        auth_timeout_s=_parse_positive_float("MESSENGER_AUTH_TIMEOUT_S", 10.0),
        history_limit=max(1, history_limit),
        token_ttl_s=max(1, _parse_non_negative_int("MESSENGER_TOKEN_TTL_S", 30 * 24 * 60 * 60)),
        ping_interval_s=max(1, _parse_non_negative_int("MESSENGER_PING_INTERVAL_S", 30)),
        log_level=_parse_log_level("MESSENGER_LOG_LEVEL", "INFO"),
    )
