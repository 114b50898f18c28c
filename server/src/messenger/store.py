from __future__ import annotations

import threading
from typing import Dict, List, Protocol, Tuple

from .errors import AlreadyFriends, NotFound, PhoneTaken
from .models import Friend, Friendship, Message, User, _now_iso

FRIEND_STATUS_ACCEPTED = "accepted"


def canonical_pair(user_a: int, user_b: int) -> Tuple[int, int]:
    if user_a == user_b:
        raise ValueError("a friendship needs two distinct users")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


class Store(Protocol):
    """Persistence contract consumed by the core and the HTTP handlers."""

    def create_user(self, name: str, phone: str, password_hash: str) -> User: ...

    def get_user(self, user_id: int) -> User | None: ...

    def find_user_by_phone(self, phone: str) -> User | None: ...

    def credential_ref(self, phone: str) -> tuple[User, str] | None: ...

    def add_friendship(self, user_a: int, user_b: int) -> Friendship: ...

    def are_friends(self, user_a: int, user_b: int) -> bool: ...

    def list_friends(self, user_id: int) -> List[Friend]: ...

    def insert_message(self, sender_id: int, receiver_id: int, content: str) -> Message: ...

    def history(self, user_a: int, user_b: int, limit: int) -> List[Message]: ...


class InMemoryStore:
    """Thread-safe in-process store used when no database path is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[int, User] = {}
        self._password_hashes: Dict[int, str] = {}
        self._by_phone: Dict[str, int] = {}
        self._friendships: Dict[Tuple[int, int], Friendship] = {}
        self._messages: List[Message] = []
        self._next_user_id = 1
        self._next_message_id = 1

    def create_user(self, name: str, phone: str, password_hash: str) -> User:
        with self._lock:
            if phone in self._by_phone:
                raise PhoneTaken()
            user = User(id=self._next_user_id, name=name, phone=phone, created_at=_now_iso())
            self._next_user_id += 1
            self._users[user.id] = user
            self._password_hashes[user.id] = password_hash
            self._by_phone[phone] = user.id
            return user

    def get_user(self, user_id: int) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def find_user_by_phone(self, phone: str) -> User | None:
        with self._lock:
            user_id = self._by_phone.get(phone)
            return self._users.get(user_id) if user_id is not None else None

    def credential_ref(self, phone: str) -> tuple[User, str] | None:
        with self._lock:
            user_id = self._by_phone.get(phone)
            if user_id is None:
                return None
            return self._users[user_id], self._password_hashes[user_id]

    def add_friendship(self, user_a: int, user_b: int) -> Friendship:
        pair = canonical_pair(user_a, user_b)
        with self._lock:
            for user_id in pair:
                if user_id not in self._users:
                    raise NotFound(f"user {user_id} not found")
            if pair in self._friendships:
                raise AlreadyFriends()
            friendship = Friendship(
                user1_id=pair[0], user2_id=pair[1], status=FRIEND_STATUS_ACCEPTED, created_at=_now_iso()
            )
            self._friendships[pair] = friendship
            return friendship

    def are_friends(self, user_a: int, user_b: int) -> bool:
        if user_a == user_b:
            return False
        with self._lock:
            return canonical_pair(user_a, user_b) in self._friendships

    def list_friends(self, user_id: int) -> List[Friend]:
        with self._lock:
            friends = []
            for (low, high), friendship in self._friendships.items():
                if user_id not in (low, high) or friendship.status != FRIEND_STATUS_ACCEPTED:
                    continue
                other = self._users[high if low == user_id else low]
                friends.append(Friend(id=other.id, name=other.name, phone=other.phone, friend_since=friendship.created_at))
        return sorted(friends, key=lambda friend: (friend.name, friend.id))

    def insert_message(self, sender_id: int, receiver_id: int, content: str) -> Message:
        with self._lock:
            sender = self._users.get(sender_id)
            if sender is None:
                raise NotFound(f"user {sender_id} not found")
            if receiver_id not in self._users:
                raise NotFound(f"user {receiver_id} not found")
            message = Message(
                id=self._next_message_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                timestamp=_now_iso(),
                sender_name=sender.name,
            )
            self._next_message_id += 1
            self._messages.append(message)
            return message

    def history(self, user_a: int, user_b: int, limit: int) -> List[Message]:
        """Latest ``limit`` messages between the pair, ascending by ``(timestamp, id)``."""

        pair = {user_a, user_b}
        with self._lock:
            matching = [m for m in self._messages if {m.sender_id, m.receiver_id} == pair]
        matching.sort(key=lambda m: (m.timestamp, m.id))
        if limit <= 0:
            return []
        return matching[-limit:]
