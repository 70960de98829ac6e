"""Contact-gated direct messages with bounded per-pair history.

Threads are keyed by the canonical (sorted) pair of user ids, so {A, B} and
{B, A} share one thread. Threads are created on the first message and never
deleted. Delivery to an offline recipient is not an error: the message stays
in the thread for later retrieval but is not queued.
"""
import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .connections import Connection
from .contacts import ContactGraph
from .errors import NotContactsError, NotFoundError
from .presence import PresenceManager
from .schemas import DirectMessage

logger = logging.getLogger(__name__)

# Default number of messages kept per pair
DEFAULT_HISTORY_LIMIT = 100

PairKey = Tuple[str, str]


def pair_key(a: str, b: str) -> PairKey:
    """Order-independent thread key for users *a* and *b*."""
    return (a, b) if a <= b else (b, a)


class DirectMessageRouter:
    """Routes direct messages between contacts.

    Args:
        contacts: Contact graph used as the authorization gate.
        presence: Resolves display names and live connections of users.
        lookup_connection: Maps a connection id to a live Connection.
        history_limit: Messages retained per pair.
    """

    def __init__(
        self,
        contacts: ContactGraph,
        presence: PresenceManager,
        lookup_connection: Callable[[str], Optional[Connection]],
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.contacts = contacts
        self.presence = presence
        self._lookup_connection = lookup_connection
        self.history_limit = history_limit
        self._threads: Dict[PairKey, Deque[DirectMessage]] = {}
        self._lock = threading.Lock()

    def send(
        self,
        sender_id: str,
        recipient_id: str,
        text: str,
        origin: Optional[Connection] = None,
    ) -> DirectMessage:
        """Store and deliver a direct message.

        The message goes to every live connection of the recipient and is
        echoed to *origin*, the sender's originating connection.

        Raises:
            NotContactsError: The two users are not contacts.
            NotFoundError: Either user id is unknown.
        """
        if not self.contacts.are_contacts(sender_id, recipient_id):
            raise NotContactsError(sender_id, recipient_id)

        sender_name = self.presence.display_name(sender_id)
        recipient_name = self.presence.display_name(recipient_id)
        if sender_name is None or recipient_name is None:
            raise NotFoundError(f"Unknown user in pair {sender_id}/{recipient_id}")

        message = DirectMessage(
            fromUserId=sender_id,
            fromUsername=sender_name,
            toUserId=recipient_id,
            toUsername=recipient_name,
            text=text,
        )
        with self._lock:
            key = pair_key(sender_id, recipient_id)
            thread = self._threads.get(key)
            if thread is None:
                thread = self._threads[key] = deque(maxlen=self.history_limit)
            thread.append(message)

        payload = message.to_payload()
        delivered = self._deliver(self.presence.connections_of(recipient_id), payload)
        if origin is not None and origin.send(payload):
            delivered += 1
        logger.info(f"[DM] {sender_id} -> {recipient_id} delivered to {delivered} connection(s)")
        return message

    def _deliver(self, connection_ids: Iterable[str], payload: dict) -> int:
        delivered = 0
        for cid in connection_ids:
            conn = self._lookup_connection(cid)
            if conn is not None and conn.send(payload):
                delivered += 1
        return delivered

    def history(self, requester_id: str, other_id: str) -> List[DirectMessage]:
        """The pair's thread, oldest first; empty if they never exchanged messages.

        Raises:
            NotContactsError: The two users are not (or no longer) contacts.
        """
        if not self.contacts.are_contacts(requester_id, other_id):
            raise NotContactsError(requester_id, other_id)
        with self._lock:
            return list(self._threads.get(pair_key(requester_id, other_id), ()))

    def thread_count(self) -> int:
        with self._lock:
            return len(self._threads)
