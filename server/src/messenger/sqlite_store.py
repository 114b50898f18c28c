from __future__ import annotations

import logging
import sqlite3
from typing import List

from .errors import AlreadyFriends, NotFound, PersistenceFailure, PhoneTaken
from .models import Friend, Friendship, Message, User, _now_iso
from .sqlite_backend import SQLiteBackend
from .store import FRIEND_STATUS_ACCEPTED, canonical_pair

logger = logging.getLogger(__name__)


def _user_from_row(row: sqlite3.Row) -> User:
    return User(id=row["id"], name=row["name"], phone=row["phone"], created_at=row["created_at"])


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        content=row["content"],
        timestamp=row["timestamp"],
        sender_name=row["sender_name"],
    )


class SQLiteStore:
    """Durable store backed by SQLite; uniqueness is enforced by table constraints."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def create_user(self, name: str, phone: str, password_hash: str) -> User:
        created_at = _now_iso()
        with self._backend.lock:
            try:
                cursor = self._backend.connection.execute(
                    "INSERT INTO users (name, phone, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (name, phone, password_hash, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise PhoneTaken() from exc
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"create_user failed: {exc}") from exc
        return User(id=cursor.lastrowid, name=name, phone=phone, created_at=created_at)

    def get_user(self, user_id: int) -> User | None:
        row = self._fetchone("SELECT id, name, phone, created_at FROM users WHERE id=?", (user_id,))
        return _user_from_row(row) if row is not None else None

    def find_user_by_phone(self, phone: str) -> User | None:
        row = self._fetchone("SELECT id, name, phone, created_at FROM users WHERE phone=?", (phone,))
        return _user_from_row(row) if row is not None else None

    def credential_ref(self, phone: str) -> tuple[User, str] | None:
        row = self._fetchone("SELECT id, name, phone, created_at, password_hash FROM users WHERE phone=?", (phone,))
        if row is None:
            return None
        return _user_from_row(row), row["password_hash"]

    def add_friendship(self, user_a: int, user_b: int) -> Friendship:
        user1_id, user2_id = canonical_pair(user_a, user_b)
        created_at = _now_iso()
        with self._backend.lock:
            try:
                self._backend.connection.execute(
                    "INSERT INTO friends (user1_id, user2_id, status, created_at) VALUES (?, ?, ?, ?)",
                    (user1_id, user2_id, FRIEND_STATUS_ACCEPTED, created_at),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc):
                    raise AlreadyFriends() from exc
                raise NotFound("user not found") from exc
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"add_friendship failed: {exc}") from exc
        return Friendship(user1_id=user1_id, user2_id=user2_id, status=FRIEND_STATUS_ACCEPTED, created_at=created_at)

    def are_friends(self, user_a: int, user_b: int) -> bool:
        if user_a == user_b:
            return False
        user1_id, user2_id = canonical_pair(user_a, user_b)
        row = self._fetchone(
            "SELECT 1 FROM friends WHERE user1_id=? AND user2_id=? AND status=?",
            (user1_id, user2_id, FRIEND_STATUS_ACCEPTED),
        )
        return row is not None

    def list_friends(self, user_id: int) -> List[Friend]:
        rows = self._fetchall(
            """
            SELECT u.id, u.name, u.phone, f.created_at AS friend_since
            FROM friends f
            JOIN users u ON u.id = CASE WHEN f.user1_id = ? THEN f.user2_id ELSE f.user1_id END
            WHERE (f.user1_id = ? OR f.user2_id = ?) AND f.status = ?
            ORDER BY u.name ASC, u.id ASC
            """,
            (user_id, user_id, user_id, FRIEND_STATUS_ACCEPTED),
        )
        return [Friend(id=row["id"], name=row["name"], phone=row["phone"], friend_since=row["friend_since"]) for row in rows]

    def insert_message(self, sender_id: int, receiver_id: int, content: str) -> Message:
        with self._backend.lock:
            timestamp = _now_iso()
            conn = self._backend.connection
            try:
                sender = conn.execute("SELECT name FROM users WHERE id=?", (sender_id,)).fetchone()
                if sender is None:
                    raise NotFound(f"user {sender_id} not found")
                cursor = conn.execute(
                    "INSERT INTO messages (sender_id, receiver_id, content, timestamp) VALUES (?, ?, ?, ?)",
                    (sender_id, receiver_id, content, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                raise NotFound(f"user {receiver_id} not found") from exc
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"insert_message failed: {exc}") from exc
        logger.debug("stored message %s from %s to %s", cursor.lastrowid, sender_id, receiver_id)
        return Message(
            id=cursor.lastrowid,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=timestamp,
            sender_name=sender["name"],
        )

    def history(self, user_a: int, user_b: int, limit: int) -> List[Message]:
        """Latest ``limit`` messages between the pair, ascending by ``(timestamp, id)``."""

        if limit <= 0:
            return []
        rows = self._fetchall(
            """
            SELECT m.id, m.sender_id, m.receiver_id, m.content, m.timestamp, u.name AS sender_name
            FROM messages m
            JOIN users u ON u.id = m.sender_id
            WHERE (m.sender_id = ? AND m.receiver_id = ?) OR (m.sender_id = ? AND m.receiver_id = ?)
            ORDER BY m.timestamp DESC, m.id DESC
            LIMIT ?
            """,
            (user_a, user_b, user_b, user_a, limit),
        )
        return [_message_from_row(row) for row in reversed(rows)]

    def _fetchone(self, query: str, params: tuple) -> sqlite3.Row | None:
        with self._backend.lock:
            try:
                return self._backend.connection.execute(query, params).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceFailure(str(exc)) from exc

    def _fetchall(self, query: str, params: tuple) -> list[sqlite3.Row]:
        with self._backend.lock:
            try:
                return self._backend.connection.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceFailure(str(exc)) from exc
