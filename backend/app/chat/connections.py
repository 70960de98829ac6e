"""Live transport channels and the connection registry.

A :class:`Connection` is one live channel to a client. The core never awaits
on a connection: writes go through :meth:`Connection.send_text`, which either
hands the frame to the transport without blocking or drops it.

:class:`ConnectionRegistry` tracks which connections are live, which rooms
each one is attached to, and the transient connection -> user binding. That
binding lives here as a side table rather than on the connection object so a
User can outlive any single connection.
"""
import asyncio
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

from .errors import TransportError

logger = logging.getLogger(__name__)


class Connection(ABC):
    """One live transport channel.

    Subclasses implement :meth:`_write`, which must not block. Raising
    :class:`TransportError` from it marks the write as dropped.
    """

    def __init__(self, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self._closed = False

    @property
    def writable(self) -> bool:
        return not self._closed

    def mark_closed(self) -> None:
        self._closed = True

    def send_text(self, text: str) -> bool:
        """Write an already-serialized frame. Returns False if it was dropped."""
        if not self.writable:
            return False
        try:
            self._write(text)
        except TransportError as exc:
            logger.debug(f"Dropped frame for connection {self.id}: {exc.message}")
            return False
        return True

    def send(self, payload: dict) -> bool:
        return self.send_text(json.dumps(payload))

    @abstractmethod
    def _write(self, text: str) -> None:
        """Hand *text* to the transport without blocking."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


class WebSocketConnection(Connection):
    """Connection backed by a FastAPI WebSocket.

    Frames are queued on a bounded outbox and drained by a writer task, so a
    slow client only ever fills its own queue. Frames are delivered in the
    order they were queued.
    """

    def __init__(self, websocket: WebSocket, queue_size: int = 256, close_timeout: float = 5.0) -> None:
        super().__init__()
        self.websocket = websocket
        self.close_timeout = close_timeout
        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    def start(self) -> None:
        """Start the writer task. Must be called from the event loop."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def _write(self, text: str) -> None:
        try:
            self._outbox.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection {self.id}; dropping frame")
            raise TransportError("outbox full")

    async def _drain(self) -> None:
        while True:
            text = await self._outbox.get()
            if text is None:
                return
            try:
                await self.websocket.send_text(text)
            except Exception as exc:
                # The matching disconnect performs cleanup
                logger.debug(f"Failed to send to connection {self.id}: {exc}")
                self.mark_closed()
                self._discard_pending()
                return

    def _discard_pending(self) -> None:
        """Empty the outbox, waking any producer blocked on a full queue."""
        dropped = 0
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        if dropped:
            logger.debug(f"Discarded {dropped} unsent frame(s) for connection {self.id}")

    async def _flush(self) -> None:
        await self._outbox.put(None)
        await self._writer

    async def close(self) -> None:
        """Stop accepting frames and wait for already-queued ones to flush.

        The wait is bounded by ``close_timeout``; a client that still has not
        drained its outbox by then loses the remaining frames.
        """
        self.mark_closed()
        if self._writer is None or self._writer.done():
            return
        try:
            await asyncio.wait_for(self._flush(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Connection {self.id} did not flush within {self.close_timeout}s; "
                f"dropping {self._outbox.qsize()} frame(s)"
            )
            self._writer.cancel()


class ConnectionRegistry:
    """Thread-safe registry of live connections.

    Attributes:
        _connections: connection id -> Connection
        _rooms: connection id -> set of room keys
        _users: connection id -> user id (set once identity is claimed)
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._users: Dict[str, str] = {}
        self._lock = threading.Lock()

    def attach(self, connection: Connection, room: str) -> None:
        """Register a connection as live and attached to *room*."""
        with self._lock:
            self._connections[connection.id] = connection
            self._rooms.setdefault(connection.id, set()).add(room)
        logger.debug(f"[Registry] Connection {connection.id} attached to room {room}")

    def detach(self, connection: Connection) -> Set[str]:
        """Forget a connection.

        Returns:
            The rooms the connection was attached to. Empty if the connection
            was already detached, so repeated teardown is a no-op.
        """
        with self._lock:
            self._connections.pop(connection.id, None)
            self._users.pop(connection.id, None)
            rooms = self._rooms.pop(connection.id, set())
        if rooms:
            logger.debug(f"[Registry] Connection {connection.id} detached from {sorted(rooms)}")
        return rooms

    def bind_user(self, connection: Connection, user_id: str) -> None:
        with self._lock:
            if connection.id not in self._connections:
                raise KeyError(connection.id)
            self._users[connection.id] = user_id

    def user_of(self, connection: Connection) -> Optional[str]:
        with self._lock:
            return self._users.get(connection.id)

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def is_live(self, connection: Connection) -> bool:
        with self._lock:
            return connection.id in self._connections

    def rooms_of(self, connection: Connection) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(connection.id, set()))

    def connections_of_user(self, user_id: str) -> List[Connection]:
        with self._lock:
            return [
                self._connections[cid]
                for cid, uid in self._users.items()
                if uid == user_id and cid in self._connections
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
