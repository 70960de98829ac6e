"""Tests for identity claims and presence transitions."""
import pytest

from app.chat.errors import InvalidEventError, NotFoundError
from app.chat.presence import PresenceManager


@pytest.fixture
def presence():
    return PresenceManager()


class TestClaim:

    def test_first_claim_creates_user_and_goes_online(self, presence, make_connection):
        conn = make_connection()
        result = presence.claim_or_resume(conn, "Alice")

        assert result.went_online is True
        assert result.resumed is False
        user = presence.get_user(result.user_id)
        assert user.username == "Alice"
        assert user.online is True
        assert user.connections == {conn.id}

    def test_names_are_trimmed(self, presence, make_connection):
        result = presence.claim_or_resume(make_connection(), "  Alice  ")
        assert presence.display_name(result.user_id) == "Alice"

    @pytest.mark.parametrize("name", ["", "   ", "\t\n"])
    def test_blank_name_rejected_without_state_change(self, presence, make_connection, name):
        conn = make_connection()
        with pytest.raises(InvalidEventError):
            presence.claim_or_resume(conn, name)
        assert len(presence) == 0
        assert presence.owner_of(conn) is None

    def test_user_ids_are_distinct(self, presence, make_connection):
        ids = {presence.claim_or_resume(make_connection(), "Same").user_id for _ in range(5)}
        assert len(ids) == 5

    def test_reclaim_on_same_connection_renames(self, presence, make_connection):
        conn = make_connection()
        first = presence.claim_or_resume(conn, "Alice")
        second = presence.claim_or_resume(conn, "Alicia")

        assert second.user_id == first.user_id
        assert second.went_online is False
        assert second.resumed is True
        assert presence.display_name(first.user_id) == "Alicia"
        assert len(presence) == 1

    def test_resume_by_user_id_on_second_connection(self, presence, make_connection):
        a, b = make_connection(), make_connection()
        first = presence.claim_or_resume(a, "Alice")
        second = presence.claim_or_resume(b, "Alice", user_id=first.user_id)

        assert second.user_id == first.user_id
        assert second.resumed is True
        assert second.went_online is False
        assert presence.connections_of(first.user_id) == {a.id, b.id}

    def test_resume_after_going_offline_goes_online_again(self, presence, make_connection):
        a, b = make_connection(), make_connection()
        first = presence.claim_or_resume(a, "Alice")
        presence.detach(a)
        assert presence.is_online(first.user_id) is False

        second = presence.claim_or_resume(b, "Alice", user_id=first.user_id)
        assert second.user_id == first.user_id
        assert second.went_online is True

    def test_unknown_user_id_allocates_new_user(self, presence, make_connection):
        result = presence.claim_or_resume(make_connection(), "Alice", user_id="user-999")
        assert result.user_id != "user-999"
        assert result.resumed is False


class TestDetach:

    def test_multi_socket_user_goes_offline_on_last_detach(self, presence, make_connection):
        a, b = make_connection(), make_connection()
        uid = presence.claim_or_resume(a, "Alice").user_id
        presence.claim_or_resume(b, "Alice", user_id=uid)

        first = presence.detach(a)
        assert first.user_id == uid
        assert first.went_offline is False
        assert presence.is_online(uid) is True

        second = presence.detach(b)
        assert second.went_offline is True
        assert presence.is_online(uid) is False

    def test_detach_is_idempotent(self, presence, make_connection):
        conn = make_connection()
        presence.claim_or_resume(conn, "Alice")
        presence.detach(conn)
        result = presence.detach(conn)
        assert result.user_id is None
        assert result.went_offline is False

    def test_users_survive_going_offline(self, presence, make_connection):
        conn = make_connection()
        uid = presence.claim_or_resume(conn, "Alice").user_id
        presence.detach(conn)
        assert presence.is_known(uid)
        assert presence.get_user(uid).username == "Alice"


class TestRoomMembership:

    def test_mark_membership(self, presence, make_connection):
        uid = presence.claim_or_resume(make_connection(), "Alice").user_id
        presence.mark_room_membership(uid, "r1", joined=True)
        assert presence.rooms_of(uid) == {"r1"}
        assert presence.members_of("r1") == {uid}

        presence.mark_room_membership(uid, "r1", joined=False)
        assert presence.rooms_of(uid) == set()
        assert presence.members_of("r1") == set()

    def test_going_offline_clears_membership(self, presence, make_connection):
        conn = make_connection()
        uid = presence.claim_or_resume(conn, "Alice").user_id
        presence.mark_room_membership(uid, "r1", joined=True)
        presence.detach(conn)
        assert presence.members_of("r1") == set()

    def test_unknown_user_is_ignored(self, presence):
        presence.mark_room_membership("user-404", "r1", joined=True)
        assert presence.members_of("r1") == set()


class TestLookup:

    def test_find_by_name_prefers_online(self, presence, make_connection):
        a, b = make_connection(), make_connection()
        online = presence.claim_or_resume(a, "Sam").user_id
        offline = presence.claim_or_resume(b, "Sam").user_id
        presence.detach(b)
        assert presence.find_by_name("Sam") == online
        assert presence.find_by_name("Nobody") is None
        assert offline != online

    def test_resolve_by_id_then_name(self, presence, make_connection):
        uid = presence.claim_or_resume(make_connection(), "Alice").user_id
        assert presence.resolve(user_id=uid) == uid
        assert presence.resolve(username="Alice") == uid
        assert presence.resolve(user_id="user-404", username="Alice") == uid
        with pytest.raises(NotFoundError):
            presence.resolve(user_id="user-404")

    def test_get_user_returns_snapshot(self, presence, make_connection):
        uid = presence.claim_or_resume(make_connection(), "Alice").user_id
        snapshot = presence.get_user(uid)
        snapshot.connections.clear()
        assert presence.is_online(uid)
        assert presence.get_user("user-404") is None
