"""Pydantic models for chat envelopes and the WebSocket protocol.

Inbound events form a closed tagged union keyed by ``type``. A payload with
no ``type`` at all is a plain room chat message. Outbound payloads are built
by the ``*_payload`` helpers at the bottom of this module so that every wire
shape is spelled out in one place.
"""
from datetime import datetime, timezone
from typing import Annotated, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision, e.g. 2024-01-01T12:00:00.000Z."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# Envelopes (immutable once stored)
# =============================================================================


class RoomMessage(BaseModel):
    """A room chat message or system notice."""
    model_config = ConfigDict(frozen=True)

    username: str = Field(..., description="Sender display name, or the system username")
    text: str = Field(..., description="Message text")
    timestamp: str = Field(default_factory=utc_timestamp, description="ISO-8601 UTC timestamp")


class DirectMessage(BaseModel):
    """A direct message between two contacts.

    Both display names are captured when the message is sent, so a later
    rename does not rewrite history.
    """
    model_config = ConfigDict(frozen=True)

    fromUserId: str
    fromUsername: str
    toUserId: str
    toUsername: str
    text: str
    timestamp: str = Field(default_factory=utc_timestamp)

    def to_payload(self) -> dict:
        # ``username`` lets clients render DMs with the same code path as room messages
        return {"type": "direct-message", "username": self.fromUsername, **self.model_dump()}


# =============================================================================
# Inbound events
# =============================================================================


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SetUsernameEvent(_Event):
    type: Literal["setUsername"]
    username: StrictStr
    userId: Optional[StrictStr] = None


class AddContactEvent(_Event):
    """Add a contact by user id or, failing that, by display name."""
    type: Literal["add-contact"]
    userId: Optional[StrictStr] = None
    username: Optional[StrictStr] = None


class RemoveContactEvent(_Event):
    type: Literal["remove-contact"]
    userId: StrictStr


class GetContactsEvent(_Event):
    type: Literal["get-contacts"]


class GetMutualsEvent(_Event):
    type: Literal["get-mutuals"]
    userId: StrictStr


class GetOnlineContactsEvent(_Event):
    type: Literal["get-online-contacts"]


class GetContactsInRoomEvent(_Event):
    type: Literal["get-contacts-in-room"]
    roomId: Optional[StrictStr] = None


class DirectMessageEvent(_Event):
    type: Literal["direct-message"]
    targetUserId: StrictStr
    text: StrictStr = Field(..., min_length=1)


class GetDmHistoryEvent(_Event):
    type: Literal["get-dm-history"]
    targetUserId: StrictStr


class RoomChatEvent(_Event):
    """Untyped default: a message to the sender's room."""
    text: StrictStr = Field(..., min_length=1)


TypedEvent = Annotated[
    Union[
        SetUsernameEvent,
        AddContactEvent,
        RemoveContactEvent,
        GetContactsEvent,
        GetMutualsEvent,
        GetOnlineContactsEvent,
        GetContactsInRoomEvent,
        DirectMessageEvent,
        GetDmHistoryEvent,
    ],
    Field(discriminator="type"),
]

InboundEvent = Union[
    SetUsernameEvent,
    AddContactEvent,
    RemoveContactEvent,
    GetContactsEvent,
    GetMutualsEvent,
    GetOnlineContactsEvent,
    GetContactsInRoomEvent,
    DirectMessageEvent,
    GetDmHistoryEvent,
    RoomChatEvent,
]

_typed_event_adapter: TypeAdapter = TypeAdapter(TypedEvent)

EVENT_TYPES = frozenset({
    "setUsername",
    "add-contact",
    "remove-contact",
    "get-contacts",
    "get-mutuals",
    "get-online-contacts",
    "get-contacts-in-room",
    "direct-message",
    "get-dm-history",
})


def parse_event(payload: object) -> InboundEvent:
    """Parse a decoded JSON payload into an inbound event.

    Raises:
        LookupError: The payload declares a ``type`` nobody handles.
        pydantic.ValidationError: The payload does not match its event schema.
    """
    if isinstance(payload, dict) and "type" in payload:
        if payload["type"] not in EVENT_TYPES:
            raise LookupError(f"Unrecognized event type: {payload['type']!r}")
        return _typed_event_adapter.validate_python(payload)
    return RoomChatEvent.model_validate(payload)


# =============================================================================
# Outbound payloads
# =============================================================================


class ContactInfo(BaseModel):
    """A contact as shown in contact lists."""
    userId: str
    username: str
    online: bool
    inRoom: bool = False
    roomId: Optional[str] = None


def user_id_assigned_payload(user_id: str, username: str) -> dict:
    return {"type": "userId-assigned", "userId": user_id, "username": username}


def contact_payload(kind: str, user_id: str, username: str) -> dict:
    """``contact-added`` / ``contact-removed``."""
    return {"type": kind, "userId": user_id, "username": username}


def error_payload(kind: str, message: str, **extra) -> dict:
    """``contact-error`` / ``dm-error``."""
    return {"type": kind, "message": message, **extra}


def contacts_list_payload(kind: str, contacts: Iterable[ContactInfo], **extra) -> dict:
    return {"type": kind, **extra, "contacts": [c.model_dump() for c in contacts]}


def dm_history_payload(other_user_id: str, messages: List[DirectMessage]) -> dict:
    return {
        "type": "dm-history",
        "userId": other_user_id,
        "messages": [m.to_payload() for m in messages],
    }


def presence_payload(user_id: str, username: str, online: bool, room_id: Optional[str] = None) -> dict:
    return {
        "type": "presence-update",
        "userId": user_id,
        "username": username,
        "status": "online" if online else "offline",
        "roomId": room_id,
    }
