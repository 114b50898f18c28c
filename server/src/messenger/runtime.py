from __future__ import annotations

import logging
from typing import Any, Dict

from aiohttp import web

from .channels import ConversationRouter
from .credentials import DEFAULT_TOKEN_TTL_MS, CredentialService, SQLiteTokenStore, TokenStore
from .dispatcher import MessageDispatcher
from .presence import PresenceRegistry
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import InMemoryStore, Store

logger = logging.getLogger(__name__)


class Runtime:
    """Process-wide handles shared by every connection of one app instance."""

    def __init__(
        self,
        *,
        store: Store,
        credentials: CredentialService,
        registry: PresenceRegistry,
        dispatcher: MessageDispatcher,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.registry = registry
        self.router = registry.router
        self.dispatcher = dispatcher
        self.backend = backend
        self.websockets: Dict[str, web.WebSocketResponse] = {}

    def close(self) -> None:
        self.registry.close()
        if self.backend is not None:
            self.backend.close()


def build_runtime(*, db_path: str | None = None, token_ttl_ms: int = DEFAULT_TOKEN_TTL_MS) -> Runtime:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        store: Store = SQLiteStore(backend)
        tokens: Any = SQLiteTokenStore(backend)
    else:
        store = InMemoryStore()
        tokens = TokenStore()
    router = ConversationRouter()
    registry = PresenceRegistry(router)
    credentials = CredentialService(store, tokens, token_ttl_ms=token_ttl_ms)
    dispatcher = MessageDispatcher(registry=registry, router=router, store=store)
    logger.info("runtime ready (%s storage)", "sqlite" if backend is not None else "in-memory")
    return Runtime(store=store, credentials=credentials, registry=registry, dispatcher=dispatcher, backend=backend)


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)
