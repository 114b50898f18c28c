"""Real-time one-to-one messenger: presence, conversation routing and dispatch."""

from .channels import Channel, ConversationRouter, channel_id
from .dispatcher import MessageDispatcher
from .presence import PresenceRegistry
from .server import main, simulate
from .session import ConnectionSession, Phase, SessionState, step

__all__ = [
    "Channel",
    "ConversationRouter",
    "channel_id",
    "MessageDispatcher",
    "PresenceRegistry",
    "ConnectionSession",
    "Phase",
    "SessionState",
    "step",
    "main",
    "simulate",
]
