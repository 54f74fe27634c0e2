# tripchat/services/room_registry.py

from __future__ import annotations

from typing import Dict, List, Set

from tripchat.services.session import SessionHandle

# ============================================================================
# ROOM REGISTRY
# ============================================================================

class RoomRegistry:
    """
    In-memory index of which session handles are subscribed to which rooms.

    Data Structures:
        rooms: Maps room_id -> Set of SessionHandles in that room
               Example: {"trip-1": {handle_a, handle_b}}

        handle.rooms: the reverse side, room ids the handle has joined
                      Example: handle_a.rooms == {"trip-1", "trip-7"}

    Invariant:
        handle in rooms[room_id]  <=>  room_id in handle.rooms
        Rooms with no members are never kept around.

    Every method is synchronous, so under the event loop each one runs as
    a single critical section. Nothing is persisted: after a restart the
    registry is empty and clients re-join.
    """

    def __init__(self) -> None:
        self.rooms: Dict[str, Set[SessionHandle]] = {}

    def add_to_room(self, room_id: str, handle: SessionHandle) -> int:
        """Subscribe ``handle`` to ``room_id``. Returns the room's member count."""
        members = self.rooms.setdefault(room_id, set())
        members.add(handle)
        handle.rooms.add(room_id)
        return len(members)

    def remove_from_room(self, room_id: str, handle: SessionHandle) -> bool:
        """
        Unsubscribe ``handle`` from ``room_id``.

        Returns False (and changes nothing) when the handle was not in the room.
        """
        if room_id not in handle.rooms:
            return False

        handle.rooms.discard(room_id)
        members = self.rooms.get(room_id)
        if members is not None:
            members.discard(handle)
            # Clean up empty room
            if not members:
                del self.rooms[room_id]
        return True

    def remove_handle(self, handle: SessionHandle) -> List[str]:
        """Drop ``handle`` from every room it joined. Returns the rooms it left."""
        left = sorted(handle.rooms)
        for room_id in left:
            self.remove_from_room(room_id, handle)
        return left

    def members_of(self, room_id: str) -> List[SessionHandle]:
        """Snapshot of the room's current members."""
        return list(self.rooms.get(room_id, ()))

    def rooms_of(self, handle: SessionHandle) -> List[str]:
        return sorted(handle.rooms)

    def is_member(self, room_id: str, handle: SessionHandle) -> bool:
        return room_id in handle.rooms

    def user_ids_in(self, room_id: str) -> List[str]:
        return sorted({h.user_id for h in self.rooms.get(room_id, ()) if h.user_id})

    def rooms_info(self) -> Dict[str, dict]:
        """
        Get information about all active rooms with members.

        Used by the /health and /metrics endpoints and for debugging.
        """
        return {
            room_id: {
                "member_count": len(members),
                "online_users": len({h.user_id for h in members}),
            }
            for room_id, members in self.rooms.items()
        }
