"""Tests for the room registry, history buffer, bans and identity binding."""
import pytest

from app.chat.bans import BanRegistry
from app.chat.errors import (
    AdminNameReservedError,
    InvalidInputError,
    NameTakenError,
    NotFoundError,
    UnauthorizedError,
)
from app.chat.identity import IdentityBinding
from app.chat.rooms import (
    HistoryBuffer,
    RoomIdGenerator,
    RoomRegistry,
    hash_password,
    sanitize_text,
)
from app.chat.schemas import ChatMessage


def make_message(n: int, room_id: str = "r") -> ChatMessage:
    return ChatMessage(roomId=room_id, author="alice", payload=str(n))


class TestRoomIdGenerator:
    """Ids must be unique even when the clock stalls or goes backwards."""

    def test_ids_pairwise_distinct_with_frozen_clock(self):
        gen = RoomIdGenerator(clock=lambda: 1700000000.0)
        ids = [gen.next_id() for _ in range(100)]
        assert len(set(ids)) == 100

    def test_ids_strictly_increasing(self):
        ticks = iter([5.0, 5.0, 4.0, 6.0])
        gen = RoomIdGenerator(clock=lambda: next(ticks))
        ids = [int(gen.next_id()) for _ in range(4)]
        assert ids == [5000, 5001, 5002, 6000]


class TestHistoryBuffer:

    def test_append_and_snapshot_order(self):
        buf = HistoryBuffer(capacity=5)
        for n in range(3):
            buf.append(make_message(n))
        assert [m.payload for m in buf.snapshot()] == ["0", "1", "2"]

    def test_evicts_oldest_beyond_capacity(self):
        """Filling N+10 messages keeps exactly the last N in order."""
        capacity = 20
        buf = HistoryBuffer(capacity=capacity)
        for n in range(1, capacity + 11):
            buf.append(make_message(n))
        assert len(buf) == capacity
        assert [m.payload for m in buf.snapshot()] == [str(n) for n in range(11, capacity + 11)]

    def test_snapshot_is_a_copy(self):
        buf = HistoryBuffer(capacity=2)
        buf.append(make_message(1))
        snap = buf.snapshot()
        buf.append(make_message(2))
        buf.append(make_message(3))
        assert [m.payload for m in snap] == ["1"]

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            HistoryBuffer(capacity=0)


class TestRoomRegistry:

    def test_create_sanitizes_name(self):
        reg = RoomRegistry()
        room = reg.create("<b>lobby</b>", False, None, owner="alice")
        assert room.name == "&lt;b&gt;lobby&lt;/b&gt;"
        assert room.members == []
        assert len(room.history) == 0

    def test_create_requires_name(self):
        reg = RoomRegistry()
        with pytest.raises(InvalidInputError):
            reg.create("   ", False, None, owner="alice")
        assert len(reg) == 0

    def test_create_rejects_long_name(self):
        reg = RoomRegistry(max_name_length=4)
        with pytest.raises(InvalidInputError):
            reg.create("toolong", False, None, owner="alice")

    def test_protected_room_requires_password(self):
        reg = RoomRegistry()
        with pytest.raises(InvalidInputError):
            reg.create("secret", True, "", owner="carl")

    def test_password_is_hashed_and_checked(self):
        reg = RoomRegistry()
        room = reg.create("secret", True, "pw1", owner="carl")
        assert room.has_password
        assert "pw1" not in room.password_hash
        assert room.check_password("pw1")
        assert not room.check_password("wrong")
        assert not room.check_password(None)

    def test_summary_hides_password(self):
        reg = RoomRegistry()
        room = reg.create("secret", True, "pw1", owner="carl")
        summary = room.summary().model_dump()
        assert summary == {"id": room.id, "name": "secret", "hasPassword": True, "owner": "carl"}

    def test_search_is_case_sensitive_substring(self):
        reg = RoomRegistry()
        reg.create("Lobby", False, None, owner="a")
        reg.create("lobby two", False, None, owner="b")
        reg.create("games", False, None, owner="c")
        assert [r.name for r in reg.search("lobby")] == ["lobby two"]
        assert [r.name for r in reg.search("Lob")] == ["Lobby"]
        assert len(reg.search("")) == 3

    def test_search_matches_escaped_names(self):
        reg = RoomRegistry()
        reg.create("R&D", False, None, owner="a")
        assert [r.name for r in reg.search("R&D")] == ["R&amp;D"]

    def test_search_ignores_entity_text(self):
        reg = RoomRegistry()
        reg.create("a&b", False, None, owner="a")
        assert reg.search("amp") == []
        assert reg.search("&amp;") == []
        assert [r.name for r in reg.search("a&b")] == ["a&amp;b"]

    def test_repeated_id_is_rejected(self):
        class StuckGenerator:
            def next_id(self):
                return "42"

        reg = RoomRegistry(id_generator=StuckGenerator())
        reg.create("one", False, None, owner="a")
        with pytest.raises(RuntimeError):
            reg.create("two", False, None, owner="b")
        assert [r.name for r in reg.summaries()] == ["one"]

    def test_precomputed_password_hash(self):
        reg = RoomRegistry()
        room = reg.create("secret", True, "pw1", owner="carl", password_hash=hash_password("pw1"))
        assert room.check_password("pw1")
        assert not room.check_password("pw2")

    def test_delete_by_owner(self):
        reg = RoomRegistry()
        room = reg.create("lobby", False, None, owner="alice")
        reg.delete(room.id, "alice")
        assert reg.find(room.id) is None

    def test_delete_by_non_owner_leaves_room_untouched(self):
        reg = RoomRegistry()
        room = reg.create("lobby", False, None, owner="alice")
        reg.add_member(room.id, "alice")
        reg.append(room.id, make_message(1, room.id))
        with pytest.raises(UnauthorizedError):
            reg.delete(room.id, "mallory")
        assert reg.find(room.id) is room
        assert room.members == ["alice"]
        assert len(room.history) == 1

    def test_delete_missing_room(self):
        reg = RoomRegistry()
        with pytest.raises(NotFoundError):
            reg.delete("nope", "alice")

    def test_membership_is_ordered_and_idempotent(self):
        reg = RoomRegistry()
        room = reg.create("lobby", False, None, owner="alice")
        assert reg.add_member(room.id, "alice")
        assert reg.add_member(room.id, "bob")
        assert not reg.add_member(room.id, "alice")
        assert room.members == ["alice", "bob"]
        assert reg.remove_member(room.id, "alice")
        assert not reg.remove_member(room.id, "alice")
        assert room.members == ["bob"]

    def test_history_bounded_per_room(self):
        reg = RoomRegistry(history_capacity=3)
        room = reg.create("lobby", False, None, owner="alice")
        for n in range(10):
            reg.append(room.id, make_message(n, room.id))
        assert [m.payload for m in reg.snapshot(room.id)] == ["7", "8", "9"]


def test_sanitize_text_escapes_markup():
    assert sanitize_text('<a href="x">&</a>') == "&lt;a href=&quot;x&quot;&gt;&amp;&lt;/a&gt;"


class TestBanRegistry:

    def test_ban_and_unban(self):
        bans = BanRegistry()
        assert not bans.is_banned("10.0.0.1")
        assert bans.ban("10.0.0.1")
        assert not bans.ban("10.0.0.1")
        assert bans.is_banned("10.0.0.1")
        assert bans.list() == ["10.0.0.1"]
        assert bans.unban("10.0.0.1")
        assert not bans.unban("10.0.0.1")
        assert not bans.is_banned("10.0.0.1")


class TestIdentityBinding:

    def test_claim_and_lookup(self):
        ids = IdentityBinding(admin_name="root")
        ids.claim("alice", "c1")
        assert ids.lookup("alice") == "c1"
        assert ids.name_of("c1") == "alice"

    def test_reclaim_own_name_is_idempotent(self):
        ids = IdentityBinding(admin_name="root")
        ids.claim("alice", "c1")
        ids.claim("alice", "c1")
        assert ids.names() == ["alice"]

    def test_name_taken_by_other_connection(self):
        ids = IdentityBinding(admin_name="root")
        ids.claim("alice", "c1")
        with pytest.raises(NameTakenError):
            ids.claim("alice", "c2")
        assert ids.lookup("alice") == "c1"
        assert ids.name_of("c2") is None

    def test_claiming_new_name_releases_old(self):
        ids = IdentityBinding(admin_name="root")
        ids.claim("alice", "c1")
        ids.claim("alicia", "c1")
        assert ids.lookup("alice") is None
        assert ids.lookup("alicia") == "c1"

    def test_release(self):
        ids = IdentityBinding(admin_name="root")
        ids.claim("alice", "c1")
        assert ids.release("c1") == "alice"
        assert ids.release("c1") is None
        ids.claim("alice", "c2")
        assert ids.lookup("alice") == "c2"

    def test_admin_name_requires_admin_session(self):
        ids = IdentityBinding(admin_name="root")
        with pytest.raises(AdminNameReservedError):
            ids.claim("root", "c1")
        ids.claim("root", "c1", is_admin=True)
        assert ids.lookup("root") == "c1"
