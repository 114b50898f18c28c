from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    """UTC timestamp with millisecond precision; sorts lexicographically."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class User:
    id: int
    name: str
    phone: str
    created_at: str = ""

    def to_api_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "phone": self.phone}


@dataclass(frozen=True)
class Friend:
    id: int
    name: str
    phone: str
    friend_since: str

    def to_api_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "phone": self.phone, "friendSince": self.friend_since}


@dataclass(frozen=True)
class Message:
    """A persisted direct message. Ordered by ``(timestamp, id)``."""

    id: int
    sender_id: int
    receiver_id: int
    content: str
    timestamp: str
    sender_name: str = ""

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "senderName": self.sender_name,
        }


@dataclass(frozen=True)
class Friendship:
    """Accepted friendship stored as the canonical pair ``user1_id < user2_id``."""

    user1_id: int
    user2_id: int
    status: str
    created_at: str
