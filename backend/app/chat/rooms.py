"""Room membership, bounded chat history and fan-out broadcast.

A room exists while at least one connection is attached to it; the entry is
dropped when the last connection leaves. Chat history is kept separately and
survives an empty room so later joiners still see the recent conversation.
Only user-authored messages are stored; system notices are broadcast only.
"""
import json
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from .connections import Connection
from .schemas import RoomMessage

logger = logging.getLogger(__name__)

# Default number of messages kept per room
DEFAULT_HISTORY_LIMIT = 100


def format_occupants(names: List[str]) -> str:
    """Join names as ``A``, ``A and B`` or ``A, B and C``."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " and " + names[-1]


class RoomBroadcastEngine:
    """Thread-safe room registry.

    Attributes:
        _rooms: room key -> {connection id -> Connection}, in join order
        _history: room key -> bounded deque of RoomMessage
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._history: Dict[str, Deque[RoomMessage]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection: Connection, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is None:
                members = self._rooms[room] = {}
                logger.info(f"[Rooms] Created room {room}")
            members[connection.id] = connection
            size = len(members)
        logger.info(f"[Rooms] Connection {connection.id} joined {room}; {size} connection(s)")

    def leave(self, connection: Connection, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is None or members.pop(connection.id, None) is None:
                return
            if not members:
                del self._rooms[room]
                emptied = True
            else:
                emptied = False
        if emptied:
            logger.info(f"[Rooms] Room {room} is now empty and has been cleaned up")

    def members(self, room: str) -> List[Connection]:
        """Snapshot of the room's connections in join order."""
        with self._lock:
            return list(self._rooms.get(room, {}).values())

    def member_count(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, {}))

    def has_room(self, room: str) -> bool:
        with self._lock:
            return room in self._rooms

    def room_keys(self) -> List[str]:
        with self._lock:
            return list(self._rooms)

    # =========================================================================
    # Broadcast
    # =========================================================================

    def broadcast(
        self,
        room: str,
        payload: dict,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Send *payload* to every connection in *room* except *exclude*.

        The payload is serialized once. Connections that are no longer
        writable are skipped silently; their disconnect is already on the
        way.

        Returns:
            Number of connections the frame was handed to.
        """
        connections = self.members(room)
        if not connections:
            logger.debug(f"[Rooms] Broadcast to empty or unknown room {room}")
            return 0

        text = json.dumps(payload)
        delivered = 0
        for conn in connections:
            if exclude is not None and conn.id == exclude.id:
                continue
            if conn.send_text(text):
                delivered += 1

        logger.debug(f"[Rooms] Broadcast in {room} to {delivered} client(s)")
        return delivered

    # =========================================================================
    # History
    # =========================================================================

    def append_history(self, room: str, message: RoomMessage) -> None:
        """Store *message*; the oldest entry is evicted once the cap is exceeded."""
        with self._lock:
            history = self._history.get(room)
            if history is None:
                history = self._history[room] = deque(maxlen=self.history_limit)
            history.append(message)

    def recent_history(self, room: str, limit: Optional[int] = None) -> List[RoomMessage]:
        """Stored messages for *room*, oldest first.

        Args:
            room: Room key. Unknown rooms yield an empty list.
            limit: If given, only the most recent *limit* messages.
        """
        with self._lock:
            messages = list(self._history.get(room, ()))
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def history_count(self, room: str) -> int:
        with self._lock:
            return len(self._history.get(room, ()))
