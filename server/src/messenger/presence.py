from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Set

from .channels import ConversationRouter
from .errors import AlreadyAuthenticated, UnknownConnection
from .models import User, _now_ms

logger = logging.getLogger(__name__)

Deliver = Callable[[dict], None]


def _discard(_: dict) -> None:
    return None


@dataclass
class Connection:
    connection_id: str
    connected_at_ms: int
    deliver: Deliver = _discard
    user: User | None = None


@dataclass(frozen=True)
class OnlineUser:
    user_id: int
    name: str
    phone: str

    def to_api_dict(self) -> dict:
        return {"userId": self.user_id, "name": self.name, "phone": self.phone}


class PresenceRegistry:
    """Owns live connections and the user -> connections mapping.

    All mutations are synchronous so that readers on the event loop always
    observe a consistent view between suspension points.
    """

    def __init__(self, router: ConversationRouter, *, now_func=_now_ms) -> None:
        self.router = router
        self._now = now_func
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[int, Set[str]] = {}
        self._users: Dict[int, User] = {}

    def register(self, connection_id: str, deliver: Deliver | None = None) -> Connection:
        existing = self._connections.get(connection_id)
        if existing is not None:
            return existing
        connection = Connection(connection_id=connection_id, connected_at_ms=self._now(), deliver=deliver or _discard)
        self._connections[connection_id] = connection
        return connection

    def get(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise UnknownConnection(f"unknown connection {connection_id}")
        return connection

    def user_of(self, connection_id: str) -> User | None:
        connection = self._connections.get(connection_id)
        return connection.user if connection is not None else None

    def bind_identity(self, connection_id: str, user: User) -> None:
        connection = self.get(connection_id)
        if connection.user is not None:
            raise AlreadyAuthenticated()
        connection.user = user
        self._by_user.setdefault(user.id, set()).add(connection_id)
        self._users[user.id] = user
        logger.info("connection %s bound to user %s", connection_id, user.id)

    def unregister(self, connection_id: str) -> Set[int]:
        """Drop a connection everywhere; returns user ids whose connection count changed."""

        connection = self._connections.pop(connection_id, None)
        self.router.leave_all(connection_id)
        if connection is None or connection.user is None:
            return set()
        user_id = connection.user.id
        connection_ids = self._by_user.get(user_id)
        if connection_ids is not None:
            connection_ids.discard(connection_id)
            if not connection_ids:
                self._by_user.pop(user_id, None)
                self._users.pop(user_id, None)
        return {user_id}

    def is_online(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def online_users(self) -> List[OnlineUser]:
        snapshot = []
        for user_id in sorted(self._by_user):
            user = self._users[user_id]
            snapshot.append(OnlineUser(user_id=user.id, name=user.name, phone=user.phone))
        return snapshot

    def __len__(self) -> int:
        return len(self._connections)

    def broadcast_roster(self) -> int:
        """Send the current roster to every live connection, authenticated or not."""

        frame = {"v": 1, "t": "users_online", "body": [entry.to_api_dict() for entry in self.online_users()]}
        delivered = 0
        for connection in list(self._connections.values()):
            connection.deliver(frame)
            delivered += 1
        return delivered

    def close(self) -> None:
        for connection_id in list(self._connections):
            self.unregister(connection_id)
