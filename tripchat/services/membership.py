# tripchat/services/membership.py
"""
Room access checks.

A room is a trip's chat channel, and whether a user may view it is decided
by the trips service that owns trip membership. The gateway asks once, at
join time, and never again for the life of the subscription.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Optional, Set

import httpx

logger = logging.getLogger(__name__)


class MembershipDirectory:
    async def can_view(self, user_id: str, room_id: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenMembership(MembershipDirectory):
    """Everyone may view every room. Local development only."""

    async def can_view(self, user_id: str, room_id: str) -> bool:
        return True


class StaticMembership(MembershipDirectory):
    """In-memory room -> user ids table."""

    def __init__(self, members: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self.members: Dict[str, Set[str]] = {
            room_id: set(user_ids) for room_id, user_ids in (members or {}).items()
        }

    @classmethod
    def from_json(cls, raw: str) -> "StaticMembership":
        """Build from ROOM_MEMBERS, e.g. '{"trip-1": ["user_a", "user_b"]}'."""
        return cls(json.loads(raw or "{}"))

    def add_member(self, room_id: str, user_id: str) -> None:
        self.members.setdefault(room_id, set()).add(user_id)

    def remove_member(self, room_id: str, user_id: str) -> None:
        self.members.get(room_id, set()).discard(user_id)

    async def can_view(self, user_id: str, room_id: str) -> bool:
        return user_id in self.members.get(room_id, set())


class HttpMembership(MembershipDirectory):
    """
    Ask the trips service whether a user belongs to a trip.

    GET {base_url}/trips/{room_id}/members/{user_id}
        2xx      -> member
        403, 404 -> not a member
        anything else (or a network failure) raises httpx.HTTPError
    """

    def __init__(self, base_url: str, timeout: float = 3.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def can_view(self, user_id: str, room_id: str) -> bool:
        response = await self.client.get(f"/trips/{room_id}/members/{user_id}")
        if response.status_code in (403, 404):
            return False
        response.raise_for_status()
        return True

    async def close(self) -> None:
        await self.client.aclose()


def build_membership(settings) -> MembershipDirectory:
    backend = settings.MEMBERSHIP_BACKEND
    if backend == "open":
        logger.warning("Room access is open to every authenticated user (MEMBERSHIP_BACKEND=open)")
        return OpenMembership()
    if backend == "static":
        return StaticMembership.from_json(settings.ROOM_MEMBERS)
    if backend == "http":
        return HttpMembership(settings.MEMBERSHIP_SERVICE_URL, timeout=settings.MEMBERSHIP_TIMEOUT)
    raise ValueError(f"Unknown MEMBERSHIP_BACKEND: {backend!r}")
