import random

from tripchat.models.models import Identity
from tripchat.services.room_registry import RoomRegistry
from tripchat.services.session import SessionHandle

from tests.conftest import FakeTransport


def _assert_consistent(registry: RoomRegistry, handles) -> None:
    for handle in handles:
        for room_id in registry.rooms_of(handle):
            assert handle in registry.members_of(room_id)
    for room_id, members in registry.rooms.items():
        assert members, f"empty room {room_id} kept in registry"
        for handle in members:
            assert room_id in registry.rooms_of(handle)


def test_add_and_remove_keep_both_sides_in_step():
    registry = RoomRegistry()
    handle = SessionHandle(FakeTransport())

    assert registry.add_to_room("trip-1", handle) == 1
    assert registry.members_of("trip-1") == [handle]
    assert registry.rooms_of(handle) == ["trip-1"]

    assert registry.remove_from_room("trip-1", handle) is True
    assert registry.members_of("trip-1") == []
    assert registry.rooms_of(handle) == []
    assert "trip-1" not in registry.rooms


def test_remove_from_room_not_joined_is_noop():
    registry = RoomRegistry()
    a = SessionHandle(FakeTransport())
    b = SessionHandle(FakeTransport())
    registry.add_to_room("trip-1", a)

    assert registry.remove_from_room("trip-1", b) is False
    assert registry.remove_from_room("trip-404", a) is False
    assert registry.members_of("trip-1") == [a]


def test_remove_handle_drops_every_room_and_empty_rooms():
    registry = RoomRegistry()
    a = SessionHandle(FakeTransport())
    b = SessionHandle(FakeTransport())
    registry.add_to_room("trip-1", a)
    registry.add_to_room("trip-2", a)
    registry.add_to_room("trip-2", b)

    left = registry.remove_handle(a)

    assert left == ["trip-1", "trip-2"]
    assert "trip-1" not in registry.rooms
    assert registry.members_of("trip-2") == [b]
    assert registry.rooms_of(a) == []


def test_random_join_leave_disconnect_sequences_stay_consistent():
    rng = random.Random(1234)
    registry = RoomRegistry()
    handles = [SessionHandle(FakeTransport()) for _ in range(5)]
    rooms = ["trip-1", "trip-2", "trip-3"]

    for _ in range(500):
        handle = rng.choice(handles)
        op = rng.random()
        if op < 0.5:
            registry.add_to_room(rng.choice(rooms), handle)
        elif op < 0.9:
            registry.remove_from_room(rng.choice(rooms), handle)
        else:
            registry.remove_handle(handle)
        _assert_consistent(registry, handles)


def test_rooms_info_and_user_ids():
    registry = RoomRegistry()
    handles = [
        SessionHandle(FakeTransport(), Identity(user_id=uid, display_name=uid))
        for uid in ("u1", "u1", "u2")
    ]
    for handle in handles:
        registry.add_to_room("trip-1", handle)

    assert registry.user_ids_in("trip-1") == ["u1", "u2"]
    assert registry.rooms_info() == {"trip-1": {"member_count": 3, "online_users": 2}}
    assert all(registry.rooms_of(h) == ["trip-1"] for h in handles)
