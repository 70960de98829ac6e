"""Real-time messaging core: rooms, presence, contacts and direct messages."""

from .connections import Connection, ConnectionRegistry, WebSocketConnection
from .contacts import ContactGraph
from .direct import DirectMessageRouter, pair_key
from .dispatcher import Dispatcher
from .errors import (
    AuthorizationError,
    ChatError,
    InvalidEventError,
    NotContactsError,
    NotFoundError,
    TransportError,
)
from .presence import PresenceManager, User
from .rooms import RoomBroadcastEngine
from .schemas import DirectMessage, RoomMessage

__all__ = [
    "AuthorizationError",
    "ChatError",
    "Connection",
    "ConnectionRegistry",
    "ContactGraph",
    "DirectMessage",
    "DirectMessageRouter",
    "Dispatcher",
    "InvalidEventError",
    "NotContactsError",
    "NotFoundError",
    "PresenceManager",
    "RoomBroadcastEngine",
    "RoomMessage",
    "TransportError",
    "User",
    "WebSocketConnection",
    "pair_key",
]
