from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies messenger migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()
        logger.info("opened database %s (schema v%d)", db_path, SCHEMA_VERSION)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                phone TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS friends (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user1_id INTEGER NOT NULL REFERENCES users (id),
                user2_id INTEGER NOT NULL REFERENCES users (id),
                status TEXT NOT NULL DEFAULT 'accepted',
                created_at TEXT NOT NULL,
                UNIQUE (user1_id, user2_id),
                CHECK (user1_id < user2_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender_id INTEGER NOT NULL REFERENCES users (id),
                receiver_id INTEGER NOT NULL REFERENCES users (id),
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_pair_idx ON messages (sender_id, receiver_id, timestamp, id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users (id),
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
