"""Per-connection lifecycle as an explicit state machine.

``step`` is pure: it maps ``(state, event)`` to the next state plus a tuple of
effects. :class:`ConnectionSession` performs those effects against the
registry, router and dispatcher and only commits the next state once every
effect succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Tuple

from .channels import Channel
from .credentials import CredentialService
from .dispatcher import MessageDispatcher
from .errors import (
    AlreadyAuthenticated,
    Forbidden,
    InvalidRequest,
    MessengerError,
    NotAuthenticated,
    NotFound,
)
from .models import User
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class Phase(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionState:
    phase: Phase = Phase.UNAUTHENTICATED
    user: User | None = None
    channels: FrozenSet[Channel] = frozenset()

    @property
    def is_authenticated(self) -> bool:
        return self.phase in (Phase.AUTHENTICATED, Phase.JOINED)


# Inbound events


@dataclass(frozen=True)
class Authenticate:
    credential: Any


@dataclass(frozen=True)
class Authenticated:
    user: User


@dataclass(frozen=True)
class AuthFailed:
    error: str


@dataclass(frozen=True)
class JoinConversation:
    peer_id: int
    declared_user_id: Any = None


@dataclass(frozen=True)
class SendMessage:
    receiver_id: int
    content: Any
    declared_sender_id: Any = None


@dataclass(frozen=True)
class Typing:
    receiver_id: int
    is_typing: bool


@dataclass(frozen=True)
class Disconnect:
    reason: str = "closed"


# Effects


@dataclass(frozen=True)
class VerifyCredential:
    credential: Any


@dataclass(frozen=True)
class BindIdentity:
    user: User


@dataclass(frozen=True)
class Emit:
    t: str
    body: Any


@dataclass(frozen=True)
class BroadcastRoster:
    pass


@dataclass(frozen=True)
class JoinChannel:
    channel: Channel
    peer_id: int


@dataclass(frozen=True)
class DispatchMessage:
    receiver_id: int
    content: Any
    declared_sender_id: Any


@dataclass(frozen=True)
class BroadcastTyping:
    receiver_id: int
    is_typing: bool


@dataclass(frozen=True)
class Reject:
    error: MessengerError


@dataclass(frozen=True)
class Unregister:
    pass


@dataclass(frozen=True)
class Transition:
    state: SessionState
    effects: Tuple[object, ...] = field(default_factory=tuple)


def step(state: SessionState, event: object) -> Transition:
    """Pure transition function for one connection."""

    if state.phase is Phase.CLOSED:
        return Transition(state)

    if isinstance(event, Disconnect):
        return Transition(replace(state, phase=Phase.CLOSED, channels=frozenset()), (Unregister(),))

    if isinstance(event, Authenticate):
        if state.is_authenticated:
            return Transition(state, (Reject(AlreadyAuthenticated()),))
        return Transition(state, (VerifyCredential(event.credential),))

    if isinstance(event, Authenticated):
        if state.is_authenticated:
            return Transition(state, (Reject(AlreadyAuthenticated()),))
        return Transition(
            replace(state, phase=Phase.AUTHENTICATED, user=event.user),
            (BindIdentity(event.user), Emit("auth_success", {"user": event.user.to_api_dict()}), BroadcastRoster()),
        )

    if isinstance(event, AuthFailed):
        return Transition(state, (Emit("auth_error", {"error": event.error}),))

    if isinstance(event, Typing):
        if not state.is_authenticated:
            return Transition(state)
        return Transition(state, (BroadcastTyping(event.receiver_id, event.is_typing),))

    if not state.is_authenticated:
        return Transition(state, (Reject(NotAuthenticated()),))

    if isinstance(event, JoinConversation):
        if event.declared_user_id is not None and event.declared_user_id != state.user.id:
            return Transition(state, (Reject(Forbidden("cannot join a conversation on behalf of another user")),))
        channel = Channel.between(state.user.id, event.peer_id)
        return Transition(
            replace(state, phase=Phase.JOINED, channels=state.channels | {channel}),
            (JoinChannel(channel, event.peer_id),),
        )

    if isinstance(event, SendMessage):
        return Transition(state, (DispatchMessage(event.receiver_id, event.content, event.declared_sender_id),))

    raise TypeError(f"unsupported event {event!r}")


def _require_user_id(body: dict, key: str) -> int:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{key} must be an integer user id")
    return value


def parse_event(frame_type: str, body: Any) -> object:
    """Decode an inbound wire frame into an event."""

    if not isinstance(body, dict):
        raise InvalidRequest("frame body must be an object")
    if frame_type == "authenticate":
        return Authenticate(body.get("credential", body.get("token")))
    if frame_type == "join_conversation":
        return JoinConversation(peer_id=_require_user_id(body, "friendId"), declared_user_id=body.get("userId"))
    if frame_type == "send_message":
        return SendMessage(
            receiver_id=_require_user_id(body, "receiverId"),
            content=body.get("content"),
            declared_sender_id=body.get("senderId"),
        )
    if frame_type == "typing":
        return Typing(receiver_id=_require_user_id(body, "receiverId"), is_typing=bool(body.get("isTyping")))
    raise InvalidRequest(f"unknown frame type: {frame_type}")


def _error_frame(error: MessengerError) -> dict:
    return {"v": 1, "t": "error", "body": {"message": error.message, "code": error.code}}


class ConnectionSession:
    def __init__(
        self,
        connection_id: str,
        *,
        registry: PresenceRegistry,
        dispatcher: MessageDispatcher,
        credentials: CredentialService,
        deliver: Callable[[dict], None],
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.connection_id = connection_id
        self.registry = registry
        self.router = registry.router
        self.dispatcher = dispatcher
        self.credentials = credentials
        self.deliver = deliver
        self.history_limit = history_limit
        self.state = SessionState()
        self.authenticated = asyncio.Event()
        registry.register(connection_id, deliver)

    @property
    def user(self) -> User | None:
        return self.state.user

    async def handle_frame(self, frame_type: str, body: Any) -> None:
        try:
            event = parse_event(frame_type, body)
        except MessengerError as exc:
            self.deliver(_error_frame(exc))
            return
        await self.handle(event)

    async def handle(self, event: object) -> None:
        before = self.state
        transition = step(before, event)
        follow_ups = []
        try:
            for effect in transition.effects:
                follow_up = await self._apply(effect)
                if follow_up is not None:
                    follow_ups.append(follow_up)
        except MessengerError as exc:
            logger.info("connection %s: %s rejected: %s", self.connection_id, type(event).__name__, exc.code)
            self.deliver(_error_frame(exc))
            return
        # A disconnect that landed while an effect was suspended wins.
        if self.state is before:
            self.state = transition.state
        for follow_up in follow_ups:
            await self.handle(follow_up)

    def close(self, reason: str = "closed") -> None:
        """Synchronous disconnect; safe to call more than once."""

        transition = step(self.state, Disconnect(reason))
        self.state = transition.state
        for effect in transition.effects:
            if isinstance(effect, Unregister):
                self._unregister(reason)

    async def _apply(self, effect: object) -> object | None:
        """Perform one effect; may return a follow-up event."""

        if isinstance(effect, Reject):
            raise effect.error
        if isinstance(effect, VerifyCredential):
            return await self._verify(effect.credential)
        if isinstance(effect, Emit):
            self.deliver({"v": 1, "t": effect.t, "body": effect.body})
        elif isinstance(effect, BindIdentity):
            self.registry.bind_identity(self.connection_id, effect.user)
            self.authenticated.set()
        elif isinstance(effect, BroadcastRoster):
            self.registry.broadcast_roster()
        elif isinstance(effect, JoinChannel):
            await self._join(effect.channel, effect.peer_id)
        elif isinstance(effect, DispatchMessage):
            await self.dispatcher.send_message(
                self.connection_id, effect.receiver_id, effect.content, effect.declared_sender_id
            )
        elif isinstance(effect, BroadcastTyping):
            self.dispatcher.set_typing(self.connection_id, effect.receiver_id, effect.is_typing)
        elif isinstance(effect, Unregister):
            self._unregister("closed")
        else:
            raise TypeError(f"unsupported effect {effect!r}")
        return None

    async def _verify(self, credential: Any) -> object:
        try:
            user = await asyncio.to_thread(self.credentials.verify, credential)
        except MessengerError as exc:
            logger.info("connection %s failed authentication: %s", self.connection_id, exc.code)
            return AuthFailed(exc.message)
        logger.info("connection %s authenticated as user %s", self.connection_id, user.id)
        return Authenticated(user)

    async def _join(self, channel: Channel, peer_id: int) -> None:
        """Join first, then snapshot history; live events seen meanwhile are replayed after it."""

        peer = await asyncio.to_thread(self.dispatcher.store.get_user, peer_id)
        if peer is None:
            raise NotFound(f"user {peer_id} not found")
        if self.state.phase is Phase.CLOSED:
            return

        buffered: List[dict] = []
        buffering = True

        def buffering_deliver(frame: dict) -> None:
            if buffering:
                buffered.append(frame)
                return
            self.deliver(frame)

        self.router.join(self.connection_id, self.user.id, channel, buffering_deliver)
        try:
            messages = await self.dispatcher.history(self.user.id, peer_id, self.history_limit)
        except BaseException:
            self.router.leave(self.connection_id, channel)
            raise
        if self.state.phase is Phase.CLOSED:
            self.router.leave(self.connection_id, channel)
            return
        self.deliver({"v": 1, "t": "message_history", "body": [m.to_api_dict() for m in messages]})
        seen = {m.id for m in messages}
        buffering = False
        for frame in buffered:
            if frame.get("t") == "new_message" and frame["body"].get("id") in seen:
                continue
            self.deliver(frame)
        logger.info("connection %s joined %s", self.connection_id, channel.id)

    def _unregister(self, reason: str) -> None:
        affected = self.registry.unregister(self.connection_id)
        logger.info("connection %s closed (%s)", self.connection_id, reason)
        if any(not self.registry.is_online(user_id) for user_id in affected):
            self.registry.broadcast_roster()
