"""Inbound event dispatch for the messaging core.

The transport adapter talks to the core only through :class:`Dispatcher`:

    connect(connection, room)        a channel opened on a room key
    inbound_text(connection, text)   a raw frame (decoded here)
    inbound_event(connection, data)  an already-decoded JSON payload
    disconnect(connection)           the channel closed (idempotent)
    transport_error(connection, r)   logged only; disconnect does the cleanup

A connection is either unclaimed or claimed. Until a ``setUsername`` event
succeeds, every other event from it is dropped with a warning.

Each public entry point runs under one dispatcher lock, which keeps
composite protocols (join, leave) from interleaving. Registries keep their
own locks for method-level atomicity. Nothing here awaits: all writes go
through non-blocking connection outboxes.

Usage:
    dispatcher = Dispatcher.get_instance()
    dispatcher.connect(conn, "lobby")
    dispatcher.inbound_text(conn, '{"type": "setUsername", "username": "Alice"}')
"""
import json
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Type

from pydantic import ValidationError

from app.config import ChatSettings, get_config

from .connections import Connection, ConnectionRegistry
from .contacts import ContactGraph
from .direct import DirectMessageRouter
from .errors import ChatError, InvalidEventError, NotContactsError, NotFoundError
from .presence import PresenceManager
from .rooms import RoomBroadcastEngine, format_occupants
from .schemas import (
    AddContactEvent,
    ContactInfo,
    DirectMessageEvent,
    GetContactsEvent,
    GetContactsInRoomEvent,
    GetDmHistoryEvent,
    GetMutualsEvent,
    GetOnlineContactsEvent,
    InboundEvent,
    RemoveContactEvent,
    RoomChatEvent,
    RoomMessage,
    SetUsernameEvent,
    contact_payload,
    contacts_list_payload,
    dm_history_payload,
    error_payload,
    parse_event,
    presence_payload,
    user_id_assigned_payload,
)

logger = logging.getLogger(__name__)


class Dispatcher:
    """Routes inbound events to the registries and fans out the results.

    All collaborators are injected so each can be tested in isolation.

    Args:
        registry: Live connections and the connection -> user side table.
        presence: Durable users and online state.
        contacts: Contact graph.
        rooms: Room membership, history and broadcast.
        direct: Direct-message router.
        system_username: Username shown on join/leave/welcome notices.
    """

    _instance: Optional["Dispatcher"] = None

    def __init__(
        self,
        registry: ConnectionRegistry,
        presence: PresenceManager,
        contacts: ContactGraph,
        rooms: RoomBroadcastEngine,
        direct: DirectMessageRouter,
        system_username: str = "System",
    ) -> None:
        self.registry = registry
        self.presence = presence
        self.contacts = contacts
        self.rooms = rooms
        self.direct = direct
        self.system_username = system_username
        self._lock = threading.RLock()

        self._handlers: Dict[Type[InboundEvent], Callable[[Connection, str, InboundEvent], None]] = {
            RoomChatEvent: self._on_room_chat,
            AddContactEvent: self._on_add_contact,
            RemoveContactEvent: self._on_remove_contact,
            GetContactsEvent: self._on_get_contacts,
            GetMutualsEvent: self._on_get_mutuals,
            GetOnlineContactsEvent: self._on_get_online_contacts,
            GetContactsInRoomEvent: self._on_get_contacts_in_room,
            DirectMessageEvent: self._on_direct_message,
            GetDmHistoryEvent: self._on_get_dm_history,
        }

    @classmethod
    def from_settings(cls, settings: ChatSettings) -> "Dispatcher":
        """Wire a dispatcher with fresh, empty registries."""
        registry = ConnectionRegistry()
        presence = PresenceManager()
        contacts = ContactGraph(presence.is_known)
        rooms = RoomBroadcastEngine(history_limit=settings.room_history_limit)
        direct = DirectMessageRouter(
            contacts,
            presence,
            registry.get,
            history_limit=settings.dm_history_limit,
        )
        return cls(
            registry,
            presence,
            contacts,
            rooms,
            direct,
            system_username=settings.system_username,
        )

    @classmethod
    def get_instance(cls) -> "Dispatcher":
        """Get or create the process-wide dispatcher."""
        if cls._instance is None:
            cls._instance = cls.from_settings(get_config().chat)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the process-wide dispatcher and all of its state.

        Primarily used for testing to ensure a clean state.
        """
        cls._instance = None

    # =========================================================================
    # Transport-facing API
    # =========================================================================

    def connect(self, connection: Connection, room: str) -> None:
        with self._lock:
            self.registry.attach(connection, room)
            self.rooms.join(connection, room)

    def inbound_text(self, connection: Connection, text: str) -> None:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning(f"[Dispatch] Dropping malformed frame from {connection.id}: {exc}")
            return
        self.inbound_event(connection, payload)

    def inbound_event(self, connection: Connection, payload: object) -> None:
        try:
            event = parse_event(payload)
        except LookupError as exc:
            logger.warning(f"[Dispatch] Dropping event from {connection.id}: {exc}")
            return
        except ValidationError as exc:
            logger.warning(
                f"[Dispatch] Dropping invalid event from {connection.id}: "
                f"{exc.error_count()} validation error(s)"
            )
            return

        with self._lock:
            if not self.registry.is_live(connection):
                logger.debug(f"[Dispatch] Ignoring event from detached connection {connection.id}")
                return

            try:
                if isinstance(event, SetUsernameEvent):
                    self._on_set_username(connection, event)
                    return

                user_id = self.registry.user_of(connection)
                if user_id is None:
                    logger.warning(
                        f"[Dispatch] Dropping {type(event).__name__} from unclaimed connection {connection.id}"
                    )
                    return
                self._handlers[type(event)](connection, user_id, event)
            except InvalidEventError as exc:
                logger.warning(f"[Dispatch] Invalid event from {connection.id}: {exc.message}")
            except ChatError as exc:
                logger.warning(f"[Dispatch] {type(exc).__name__} handling event from {connection.id}: {exc.message}")

    def disconnect(self, connection: Connection) -> None:
        """Tear down every trace of *connection*. Safe to call more than once."""
        with self._lock:
            if not self.registry.is_live(connection):
                return
            user_id = self.registry.user_of(connection)
            username = self.presence.display_name(user_id) if user_id else None
            rooms = self.registry.detach(connection)

            for room in sorted(rooms):
                # Announce first so the leaver is skipped by exclusion, not absence
                if username is not None:
                    self.rooms.broadcast(room, self._notice(f"{username} left the room"), exclude=connection)
                self.rooms.leave(connection, room)
            logger.info(f"[Dispatch] Connection {connection.id} ({username or 'unclaimed'}) disconnected")

            if user_id is None:
                return
            remaining_rooms = set()
            for other in self.registry.connections_of_user(user_id):
                remaining_rooms |= self.registry.rooms_of(other)
            for room in rooms - remaining_rooms:
                self.presence.mark_room_membership(user_id, room, joined=False)

            result = self.presence.detach(connection)
            if result.went_offline:
                self._send_to_contacts(user_id, presence_payload(user_id, username, online=False))

    def transport_error(self, connection: Connection, reason: object) -> None:
        logger.error(f"[Dispatch] Transport error on connection {connection.id}: {reason}")

    # =========================================================================
    # Identity
    # =========================================================================

    def _on_set_username(self, connection: Connection, event: SetUsernameEvent) -> None:
        first_claim = self.registry.user_of(connection) is None
        result = self.presence.claim_or_resume(connection, event.username, event.userId)
        self.registry.bind_user(connection, result.user_id)
        username = self.presence.display_name(result.user_id)

        connection.send(user_id_assigned_payload(result.user_id, username))

        rooms = sorted(self.registry.rooms_of(connection))
        if first_claim:
            for room in rooms:
                self._join_room(connection, result.user_id, username, room)

        if result.went_online:
            self._send_to_contacts(
                result.user_id,
                presence_payload(result.user_id, username, online=True, room_id=rooms[0] if rooms else None),
            )

    def _join_room(self, connection: Connection, user_id: str, username: str, room: str) -> None:
        """Join protocol: membership, history, welcome notice, then join notice."""
        self.presence.mark_room_membership(user_id, room, joined=True)

        history = self.rooms.recent_history(room)
        for message in history:
            connection.send(message.model_dump())
        if history:
            logger.info(f"[Dispatch] Sent {len(history)} previous message(s) to {username} in {room}")

        occupants = self._occupant_names(room, exclude_user=user_id)
        if occupants:
            connection.send(self._notice(f"Users in room: {format_occupants(occupants)}"))

        self.rooms.broadcast(room, self._notice(f"{username} joined the room"), exclude=connection)

    def _occupant_names(self, room: str, exclude_user: str) -> List[str]:
        """Display names of the other claimed users in *room*, in join order."""
        seen = set()
        names = []
        for conn in self.rooms.members(room):
            uid = self.registry.user_of(conn)
            if uid is None or uid == exclude_user or uid in seen:
                continue
            seen.add(uid)
            name = self.presence.display_name(uid)
            if name:
                names.append(name)
        return names

    # =========================================================================
    # Room chat
    # =========================================================================

    def _on_room_chat(self, connection: Connection, user_id: str, event: RoomChatEvent) -> None:
        username = self.presence.display_name(user_id)
        for room in sorted(self.registry.rooms_of(connection)):
            message = RoomMessage(username=username, text=event.text)
            self.rooms.append_history(room, message)
            # Echo to the sender as well so every client renders the same stream
            delivered = self.rooms.broadcast(room, message.model_dump())
            logger.info(f"[Dispatch] Message from {username} in {room} delivered to {delivered} client(s)")

    # =========================================================================
    # Contacts
    # =========================================================================

    def _on_add_contact(self, connection: Connection, user_id: str, event: AddContactEvent) -> None:
        try:
            target_id = self.presence.resolve(event.userId, event.username)
        except NotFoundError as exc:
            connection.send(error_payload("contact-error", "User not found"))
            logger.info(f"[Dispatch] add-contact from {user_id} failed: {exc.message}")
            return

        if target_id == user_id:
            connection.send(error_payload("contact-error", "You cannot add yourself as a contact"))
            return
        if not self.contacts.add(user_id, target_id):
            connection.send(error_payload("contact-error", "Could not add contact"))
            return

        self._send_to_user(
            user_id, contact_payload("contact-added", target_id, self.presence.display_name(target_id))
        )
        self._send_to_user(
            target_id, contact_payload("contact-added", user_id, self.presence.display_name(user_id))
        )

    def _on_remove_contact(self, connection: Connection, user_id: str, event: RemoveContactEvent) -> None:
        existed = self.contacts.remove(user_id, event.userId)
        target_name = self.presence.display_name(event.userId) or "Unknown"
        self._send_to_user(user_id, contact_payload("contact-removed", event.userId, target_name))
        if existed:
            self._send_to_user(
                event.userId, contact_payload("contact-removed", user_id, self.presence.display_name(user_id))
            )

    def _contact_info(self, contact_id: str, room: Optional[str]) -> Optional[ContactInfo]:
        user = self.presence.get_user(contact_id)
        if user is None:
            return None
        in_room = room is not None and room in user.rooms
        if in_room:
            room_id = room
        else:
            room_id = min(user.rooms) if user.rooms else None
        return ContactInfo(
            userId=user.userId,
            username=user.username,
            online=user.online,
            inRoom=in_room,
            roomId=room_id,
        )

    def _contact_infos(self, contact_ids: Iterable[str], room: Optional[str]) -> List[ContactInfo]:
        infos = [self._contact_info(cid, room) for cid in contact_ids]
        return sorted((i for i in infos if i is not None), key=lambda i: (i.username.lower(), i.userId))

    def _current_room(self, connection: Connection) -> Optional[str]:
        rooms = self.registry.rooms_of(connection)
        return min(rooms) if rooms else None

    def _on_get_contacts(self, connection: Connection, user_id: str, event: GetContactsEvent) -> None:
        infos = self._contact_infos(self.contacts.contacts_of(user_id), self._current_room(connection))
        connection.send(contacts_list_payload("contacts-list", infos))

    def _on_get_mutuals(self, connection: Connection, user_id: str, event: GetMutualsEvent) -> None:
        infos = self._contact_infos(self.contacts.mutuals(user_id, event.userId), self._current_room(connection))
        connection.send(contacts_list_payload("mutuals-list", infos, userId=event.userId))

    def _on_get_online_contacts(
        self, connection: Connection, user_id: str, event: GetOnlineContactsEvent
    ) -> None:
        infos = self._contact_infos(self.contacts.contacts_of(user_id), self._current_room(connection))
        connection.send(contacts_list_payload("online-contacts-list", [i for i in infos if i.online]))

    def _on_get_contacts_in_room(
        self, connection: Connection, user_id: str, event: GetContactsInRoomEvent
    ) -> None:
        room = event.roomId or self._current_room(connection)
        in_room = self.contacts.contacts_of(user_id) & self.presence.members_of(room) if room else set()
        infos = self._contact_infos(in_room, room)
        connection.send(contacts_list_payload("contacts-in-room-list", infos, roomId=room))

    # =========================================================================
    # Direct messages
    # =========================================================================

    def _on_direct_message(self, connection: Connection, user_id: str, event: DirectMessageEvent) -> None:
        try:
            self.direct.send(user_id, event.targetUserId, event.text, origin=connection)
        except NotContactsError as exc:
            logger.info(f"[Dispatch] DM from {user_id} to {event.targetUserId} rejected: not contacts")
            connection.send(error_payload("dm-error", exc.message, targetUserId=event.targetUserId))
        except NotFoundError:
            connection.send(error_payload("dm-error", "User not found", targetUserId=event.targetUserId))

    def _on_get_dm_history(self, connection: Connection, user_id: str, event: GetDmHistoryEvent) -> None:
        try:
            messages = self.direct.history(user_id, event.targetUserId)
        except NotContactsError as exc:
            connection.send(error_payload("dm-error", exc.message, targetUserId=event.targetUserId))
            return
        connection.send(dm_history_payload(event.targetUserId, messages))

    # =========================================================================
    # Delivery helpers
    # =========================================================================

    def _notice(self, text: str) -> dict:
        return RoomMessage(username=self.system_username, text=text).model_dump()

    def _send_to_user(self, user_id: str, payload: dict) -> int:
        """Write *payload* to every live connection of *user_id*."""
        text = json.dumps(payload)
        delivered = 0
        for cid in self.presence.connections_of(user_id):
            conn = self.registry.get(cid)
            if conn is not None and conn.send_text(text):
                delivered += 1
        return delivered

    def _send_to_contacts(self, user_id: str, payload: dict) -> None:
        for contact_id in self.contacts.contacts_of(user_id):
            self._send_to_user(contact_id, payload)
