# tripchat/services/session.py

from __future__ import annotations

import enum
import uuid
from typing import Any, Dict, Optional, Protocol, Set

from tripchat.models.models import Identity


class Transport(Protocol):
    """Anything we can push a JSON frame through (FastAPI's WebSocket in production)."""

    async def send_json(self, data: Any) -> None: ...


class HandleState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionHandle:
    """
    One live client connection.

    The identity is bound once, when the gateway attaches it, and never
    changes afterwards. ``rooms`` mirrors the room registry: the gateway
    keeps both sides in step, nothing else should touch it.
    """

    def __init__(self, transport: Transport, identity: Optional[Identity] = None) -> None:
        self.id: str = uuid.uuid4().hex
        self.transport = transport
        self.rooms: Set[str] = set()
        self.state = HandleState.CONNECTING
        self._identity: Optional[Identity] = None
        if identity is not None:
            self.attach_identity(identity)

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def user_id(self) -> Optional[str]:
        return self._identity.user_id if self._identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.state in (HandleState.AUTHENTICATED, HandleState.ACTIVE)

    @property
    def is_closed(self) -> bool:
        return self.state is HandleState.CLOSED

    def attach_identity(self, identity: Identity) -> None:
        if self._identity is not None:
            raise RuntimeError("Identity already bound to this session")
        self._identity = identity
        self.state = HandleState.AUTHENTICATED

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.transport.send_json({"event": event, "data": data or {}})

    def __repr__(self) -> str:
        return f"<SessionHandle {self.id[:8]} user={self.user_id} state={self.state.value}>"
