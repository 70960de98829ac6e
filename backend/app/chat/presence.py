"""Identity and presence tracking.

Users are durable for the lifetime of the process: once created by an
identity claim they are never deleted, so message history stays attributable.
A user is online exactly while at least one live connection is attached.

Room membership here is per *user* and exists only to answer presence
queries ("which of my contacts are in room X?"). Per-connection room
attachment belongs to the connection registry and the room engine.
"""
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .connections import Connection
from .errors import InvalidEventError, NotFoundError

logger = logging.getLogger(__name__)


class User(BaseModel):
    """A person, stable across reconnects and simultaneous connections.

    Attributes:
        userId: Unique identifier, never reused.
        username: Current display name (mutable).
        connections: Ids of the live connections attached to this user.
        rooms: Rooms this user currently has at least one connection in.
    """
    userId: str = Field(..., description="Unique user ID")
    username: str = Field(..., description="Display name shown in UI")
    connections: Set[str] = Field(default_factory=set)
    rooms: Set[str] = Field(default_factory=set)

    @property
    def online(self) -> bool:
        return bool(self.connections)


@dataclass(frozen=True)
class ClaimResult:
    user_id: str
    went_online: bool
    resumed: bool


@dataclass(frozen=True)
class DetachResult:
    user_id: Optional[str]
    went_offline: bool


class PresenceManager:
    """Owns User records and derives online/offline transitions."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        # connection id -> user id
        self._owners: Dict[str, str] = {}
        # room -> user ids with at least one connection in it
        self._room_members: Dict[str, Set[str]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # =========================================================================
    # Identity
    # =========================================================================

    def claim_or_resume(
        self,
        connection: Connection,
        display_name: str,
        user_id: Optional[str] = None,
    ) -> ClaimResult:
        """Bind *connection* to a user, creating the user if needed.

        Resolution order:
            1. The connection already belongs to a user: rename it (tab refresh).
            2. *user_id* names a known user: attach the connection to it.
            3. Otherwise allocate a fresh user.

        Returns:
            ClaimResult whose ``went_online`` is True only when this
            connection is the user's first live one.

        Raises:
            InvalidEventError: *display_name* is empty or whitespace only.
        """
        name = (display_name or "").strip()
        if not name:
            raise InvalidEventError("Display name must not be empty")

        with self._lock:
            owner = self._owners.get(connection.id)
            if owner is not None:
                user = self._users[owner]
                user.username = name
                logger.info(f"[Presence] Connection {connection.id} re-claimed as {owner} ({name})")
                return ClaimResult(owner, went_online=False, resumed=True)

            resumed = user_id is not None and user_id in self._users
            if resumed:
                user = self._users[user_id]
                user.username = name
            else:
                user = User(userId=f"user-{next(self._ids)}", username=name)
                self._users[user.userId] = user

            went_online = not user.connections
            user.connections.add(connection.id)
            self._owners[connection.id] = user.userId

        logger.info(
            f"[Presence] {user.userId} ({name}) attached connection {connection.id} "
            f"resumed={resumed} went_online={went_online}"
        )
        return ClaimResult(user.userId, went_online=went_online, resumed=resumed)

    def detach(self, connection: Connection) -> DetachResult:
        """Remove *connection* from its owner's connection set.

        Returns ``DetachResult(None, False)`` for a connection that never
        claimed an identity or was already detached.
        """
        with self._lock:
            user_id = self._owners.pop(connection.id, None)
            if user_id is None:
                return DetachResult(None, False)
            user = self._users[user_id]
            user.connections.discard(connection.id)
            went_offline = not user.connections
            if went_offline:
                for room in user.rooms:
                    self._discard_member(room, user_id)
                user.rooms.clear()

        if went_offline:
            logger.info(f"[Presence] {user_id} is now offline")
        return DetachResult(user_id, went_offline)

    # =========================================================================
    # Room membership (presence queries only)
    # =========================================================================

    def mark_room_membership(self, user_id: str, room: str, joined: bool) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return
            if joined:
                user.rooms.add(room)
                self._room_members.setdefault(room, set()).add(user_id)
            else:
                user.rooms.discard(room)
                self._discard_member(room, user_id)

    def _discard_member(self, room: str, user_id: str) -> None:
        members = self._room_members.get(room)
        if members is None:
            return
        members.discard(user_id)
        if not members:
            del self._room_members[room]

    def members_of(self, room: str) -> Set[str]:
        with self._lock:
            return set(self._room_members.get(room, set()))

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_user(self, user_id: str) -> Optional[User]:
        """Return a snapshot of the user, or None if unknown."""
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def owner_of(self, connection: Connection) -> Optional[str]:
        with self._lock:
            return self._owners.get(connection.id)

    def is_known(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            return bool(user and user.connections)

    def display_name(self, user_id: str) -> Optional[str]:
        with self._lock:
            user = self._users.get(user_id)
            return user.username if user else None

    def connections_of(self, user_id: str) -> Set[str]:
        with self._lock:
            user = self._users.get(user_id)
            return set(user.connections) if user else set()

    def rooms_of(self, user_id: str) -> Set[str]:
        with self._lock:
            user = self._users.get(user_id)
            return set(user.rooms) if user else set()

    def find_by_name(self, username: str) -> Optional[str]:
        """Resolve a display name to a user id.

        Names are not unique; online users win over offline ones and, among
        equals, the most recently created user wins.
        """
        name = username.strip()
        with self._lock:
            matches: List[User] = [u for u in self._users.values() if u.username == name]
            if not matches:
                return None
            matches.sort(key=lambda u: u.online)
            return matches[-1].userId

    def resolve(self, user_id: Optional[str] = None, username: Optional[str] = None) -> str:
        """Resolve a user by id, falling back to display name.

        Raises:
            NotFoundError: Neither lookup key names a known user.
        """
        if user_id and self.is_known(user_id):
            return user_id
        if username:
            found = self.find_by_name(username)
            if found is not None:
                return found
        raise NotFoundError(f"User not found: {user_id or username or ''}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)
