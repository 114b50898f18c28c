from __future__ import annotations

import asyncio
import logging
from typing import List

from .channels import Channel, ConversationRouter
from .errors import EmptyContent, Forbidden, NotAuthenticated, NotFound
from .models import Message
from .presence import PresenceRegistry
from .store import Store

logger = logging.getLogger(__name__)


def _frame(t: str, body) -> dict:
    return {"v": 1, "t": t, "body": body}


class MessageDispatcher:
    """Validates, persists and fans out direct messages and typing signals."""

    def __init__(self, *, registry: PresenceRegistry, router: ConversationRouter, store: Store) -> None:
        self.registry = registry
        self.router = router
        self.store = store

    async def send_message(
        self,
        sender_connection_id: str,
        receiver_user_id: int,
        content: object,
        declared_sender_id: object = None,
    ) -> Message:
        sender = self.registry.user_of(sender_connection_id)
        if sender is None:
            raise NotAuthenticated()
        if not isinstance(content, str) or not content.strip():
            raise EmptyContent()
        if declared_sender_id != sender.id:
            raise Forbidden()

        # Broadcast strictly after the write returns so no member sees an unpersisted message.
        message = await asyncio.to_thread(self._persist, sender.id, receiver_user_id, content.strip())
        channel = Channel.between(sender.id, receiver_user_id)
        delivered = self.router.broadcast(channel, _frame("new_message", message.to_api_dict()))
        logger.info(
            "message %s from %s to %s delivered to %d connection(s)",
            message.id,
            sender.id,
            receiver_user_id,
            delivered,
        )
        return message

    def _persist(self, sender_id: int, receiver_id: int, content: str) -> Message:
        if self.store.get_user(receiver_id) is None:
            raise NotFound(f"user {receiver_id} not found")
        return self.store.insert_message(sender_id, receiver_id, content)

    def set_typing(self, connection_id: str, receiver_user_id: int, is_typing: bool) -> int:
        sender = self.registry.user_of(connection_id)
        if sender is None:
            return 0
        channel = Channel.between(sender.id, receiver_user_id)
        body = {"userId": sender.id, "userName": sender.name, "isTyping": bool(is_typing)}
        return self.router.broadcast(channel, _frame("user_typing", body), exclude_user_id=sender.id)

    async def history(self, user_id: int, peer_id: int, limit: int) -> List[Message]:
        return await asyncio.to_thread(self.store.history, user_id, peer_id, limit)
