from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Set

logger = logging.getLogger(__name__)

Deliver = Callable[[dict], None]

CHANNEL_DELIMITER = "-"


@dataclass(frozen=True, order=True)
class Channel:
    """Canonical pair of participants in a one-to-one conversation."""

    low: int
    high: int

    @classmethod
    def between(cls, user_a: int, user_b: int) -> "Channel":
        low, high = sorted((user_a, user_b))
        return cls(low=low, high=high)

    @property
    def id(self) -> str:
        return f"{self.low}{CHANNEL_DELIMITER}{self.high}"

    def includes(self, user_id: int) -> bool:
        return user_id in (self.low, self.high)


def channel_id(user_a: int, user_b: int) -> str:
    return Channel.between(user_a, user_b).id


@dataclass
class Membership:
    connection_id: str
    user_id: int
    deliver: Deliver


class ConversationRouter:
    """Tracks which live connections joined which channel and fans events out to them."""

    def __init__(self) -> None:
        self._members: Dict[Channel, Dict[str, Membership]] = {}
        self._joined: Dict[str, Set[Channel]] = {}

    def join(self, connection_id: str, user_id: int, channel: Channel, deliver: Deliver) -> None:
        if not channel.includes(user_id):
            raise ValueError(f"user {user_id} cannot join {channel.id}")
        members = self._members.setdefault(channel, {})
        members[connection_id] = Membership(connection_id=connection_id, user_id=user_id, deliver=deliver)
        self._joined.setdefault(connection_id, set()).add(channel)

    def leave(self, connection_id: str, channel: Channel) -> None:
        members = self._members.get(channel)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                self._members.pop(channel, None)
        joined = self._joined.get(connection_id)
        if joined is not None:
            joined.discard(channel)
            if not joined:
                self._joined.pop(connection_id, None)

    def leave_all(self, connection_id: str) -> Set[Channel]:
        channels = self._joined.pop(connection_id, set())
        for channel in channels:
            members = self._members.get(channel)
            if members is None:
                continue
            members.pop(connection_id, None)
            if not members:
                self._members.pop(channel, None)
        return channels

    def channels_of(self, connection_id: str) -> Set[Channel]:
        return set(self._joined.get(connection_id, set()))

    def members(self, channel: Channel) -> list[str]:
        return sorted(self._members.get(channel, {}))

    def broadcast(
        self,
        channel: Channel,
        event: dict[str, Any],
        *,
        exclude_connection_id: str | None = None,
        exclude_user_id: int | None = None,
    ) -> int:
        """Deliver ``event`` to every joined connection; returns the delivery count."""

        delivered = 0
        for membership in list(self._members.get(channel, {}).values()):
            if membership.connection_id == exclude_connection_id:
                continue
            if exclude_user_id is not None and membership.user_id == exclude_user_id:
                continue
            membership.deliver(event)
            delivered += 1
        logger.debug("broadcast %s to %d connection(s) on %s", event.get("t"), delivered, channel.id)
        return delivered
