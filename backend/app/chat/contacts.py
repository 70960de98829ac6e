"""Bidirectional contact graph.

Every edge {a, b} is stored as the two directed entries a -> b and b -> a so
either side can be looked up in O(1). Both entries are written under the
same lock, so no reader ever sees half an edge.
"""
import logging
import threading
from typing import Callable, Dict, Set

logger = logging.getLogger(__name__)


class ContactGraph:
    """Symmetric contact relation between user ids.

    Args:
        is_known_user: Predicate used by :meth:`add` to reject edges to user
            ids that have never claimed an identity.
    """

    def __init__(self, is_known_user: Callable[[str], bool]) -> None:
        self._edges: Dict[str, Set[str]] = {}
        self._is_known_user = is_known_user
        self._lock = threading.Lock()

    def add(self, a: str, b: str) -> bool:
        """Create the edge {a, b}.

        Returns:
            False for a self-edge or when either endpoint is not a known
            user, True otherwise. Adding an existing edge succeeds and
            changes nothing.
        """
        if a == b:
            logger.debug(f"[Contacts] Rejected self-edge for {a}")
            return False
        if not (self._is_known_user(a) and self._is_known_user(b)):
            logger.debug(f"[Contacts] Rejected edge {a} <-> {b}: unknown user")
            return False
        with self._lock:
            self._edges.setdefault(a, set()).add(b)
            self._edges.setdefault(b, set()).add(a)
        logger.info(f"[Contacts] {a} <-> {b}")
        return True

    def remove(self, a: str, b: str) -> bool:
        """Delete the edge {a, b}. Returns whether it existed; never fails."""
        with self._lock:
            existed = b in self._edges.get(a, set())
            self._discard(a, b)
            self._discard(b, a)
        if existed:
            logger.info(f"[Contacts] {a} </> {b}")
        return existed

    def _discard(self, src: str, dst: str) -> None:
        targets = self._edges.get(src)
        if targets is None:
            return
        targets.discard(dst)
        if not targets:
            del self._edges[src]

    def are_contacts(self, a: str, b: str) -> bool:
        with self._lock:
            return b in self._edges.get(a, set())

    def contacts_of(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._edges.get(user_id, set()))

    def mutuals(self, a: str, b: str) -> Set[str]:
        """Contacts shared by *a* and *b*, computed fresh on every call."""
        with self._lock:
            return self._edges.get(a, set()) & self._edges.get(b, set())

    def edge_count(self) -> int:
        with self._lock:
            return sum(len(targets) for targets in self._edges.values()) // 2

    def snapshot(self) -> Dict[str, Set[str]]:
        """Copy of the whole adjacency map, taken under one lock."""
        with self._lock:
            return {user_id: set(targets) for user_id, targets in self._edges.items()}
