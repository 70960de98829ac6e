"""Tests for the direct-message router."""
import pytest

from app.chat.connections import ConnectionRegistry
from app.chat.contacts import ContactGraph
from app.chat.direct import DirectMessageRouter, pair_key
from app.chat.errors import AuthorizationError, NotContactsError
from app.chat.presence import PresenceManager


@pytest.fixture
def world(make_connection):
    """Alice with one connection, Bob with two, Carol offline."""
    registry = ConnectionRegistry()
    presence = PresenceManager()
    contacts = ContactGraph(presence.is_known)
    router = DirectMessageRouter(contacts, presence, registry.get, history_limit=100)

    def claim(name, user_id=None):
        conn = make_connection()
        registry.attach(conn, "r1")
        uid = presence.claim_or_resume(conn, name, user_id).user_id
        registry.bind_user(conn, uid)
        return uid, conn

    alice, a1 = claim("Alice")
    bob, b1 = claim("Bob")
    _, b2 = claim("Bob", bob)
    carol, c1 = claim("Carol")
    presence.detach(c1)
    registry.detach(c1)

    return {
        "router": router,
        "contacts": contacts,
        "presence": presence,
        "alice": alice,
        "bob": bob,
        "carol": carol,
        "a1": a1,
        "b1": b1,
        "b2": b2,
    }


def test_pair_key_is_order_independent():
    assert pair_key("u2", "u1") == pair_key("u1", "u2") == ("u1", "u2")


def test_send_between_non_contacts_fails_without_thread(world):
    router = world["router"]
    with pytest.raises(NotContactsError) as exc_info:
        router.send(world["alice"], world["bob"], "hi", origin=world["a1"])
    assert isinstance(exc_info.value, AuthorizationError)
    assert router.thread_count() == 0
    assert world["b1"].frames == []
    assert world["a1"].frames == []


def test_send_delivers_to_all_recipient_sockets_and_echoes(world):
    router, alice, bob = world["router"], world["alice"], world["bob"]
    world["contacts"].add(alice, bob)

    message = router.send(alice, bob, "hello", origin=world["a1"])

    assert message.fromUsername == "Alice"
    assert message.toUsername == "Bob"
    for conn in (world["b1"], world["b2"], world["a1"]):
        assert len(conn.frames) == 1
        frame = conn.frames[0]
        assert frame["type"] == "direct-message"
        assert frame["fromUserId"] == alice
        assert frame["toUserId"] == bob
        assert frame["text"] == "hello"
        assert frame["username"] == "Alice"
    assert router.thread_count() == 1
    assert len(router.history(alice, bob)) == 1


def test_send_to_offline_contact_is_kept_in_history(world):
    router, alice, carol = world["router"], world["alice"], world["carol"]
    world["contacts"].add(alice, carol)

    router.send(alice, carol, "you there?")
    assert [m.text for m in router.history(carol, alice)] == ["you there?"]


def test_history_is_symmetric(world):
    router, alice, bob = world["router"], world["alice"], world["bob"]
    world["contacts"].add(alice, bob)
    router.send(alice, bob, "1")
    router.send(bob, alice, "2")

    assert router.history(alice, bob) == router.history(bob, alice)
    assert [m.text for m in router.history(alice, bob)] == ["1", "2"]


def test_history_without_thread_is_empty(world):
    world["contacts"].add(world["alice"], world["bob"])
    assert world["router"].history(world["alice"], world["bob"]) == []


def test_history_rejected_once_contact_removed(world):
    router, contacts, alice, bob = world["router"], world["contacts"], world["alice"], world["bob"]
    contacts.add(alice, bob)
    router.send(alice, bob, "hi")

    contacts.remove(alice, bob)
    with pytest.raises(NotContactsError):
        router.history(alice, bob)
    with pytest.raises(NotContactsError):
        router.history(bob, alice)


def test_names_frozen_at_send_time(world, make_connection):
    router, alice, bob = world["router"], world["alice"], world["bob"]
    world["contacts"].add(alice, bob)
    router.send(alice, bob, "hi")

    world["presence"].claim_or_resume(world["a1"], "Alicia")
    assert router.history(alice, bob)[0].fromUsername == "Alice"


def test_history_bounded(world):
    router = DirectMessageRouter(world["contacts"], world["presence"], lambda cid: None, history_limit=100)
    alice, bob = world["alice"], world["bob"]
    world["contacts"].add(alice, bob)
    for i in range(150):
        router.send(alice, bob, f"m{i}")
    history = router.history(bob, alice)
    assert len(history) == 100
    assert history[0].text == "m50"
    assert history[-1].text == "m149"
