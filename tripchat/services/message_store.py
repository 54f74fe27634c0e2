# tripchat/services/message_store.py

from __future__ import annotations

import abc
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tripchat.models.models import Message

logger = logging.getLogger(__name__)


class MessageStore(abc.ABC):
    """
    Durable, append-only log of chat messages keyed by room.

    Contract:
        - append() is atomic and assigns the id and created_at itself.
        - Concurrent appends to one room (from different senders) always
          produce distinct messages; their relative order is the store's
          serialization order, which is also id order.
        - With an idempotency_key, a repeat of (room_id, sender_id, key)
          inside the configured window returns the original message instead
          of appending a new one. The copy is marked replayed, and delivered
          once mark_delivered() was called for that key.
    """

    name = "abstract"

    async def connect(self) -> None:
        """Open connections (no-op for stores that don't need one)."""

    async def close(self) -> None:
        """Release connections."""

    @abc.abstractmethod
    async def append(
        self,
        room_id: str,
        sender_id: str,
        body: str,
        *,
        sender_display_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Message:
        ...

    @abc.abstractmethod
    async def mark_delivered(self, room_id: str, sender_id: str, idempotency_key: str) -> None:
        """Record that the message sent under ``idempotency_key`` reached the room."""

    @abc.abstractmethod
    async def list_since(self, room_id: str, cursor: Optional[int] = None) -> List[Message]:
        """Messages of ``room_id`` with id > cursor, oldest first."""

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryMessageStore(MessageStore):
    """
    Process-local message log. Default backend, and the one tests run against.

    Messages vanish on restart; use RedisMessageStore where history must survive.
    """

    name = "memory"

    def __init__(self, idempotency_window: float = 300.0) -> None:
        self._messages: Dict[str, List[Message]] = {}
        self._seq = 0
        self._lock = asyncio.Lock()
        self._idempotency_window = idempotency_window
        # (room_id, sender_id, key) -> [message, expires_at, delivered]
        self._seen: Dict[Tuple[str, str, str], List[Any]] = {}

    async def append(
        self,
        room_id: str,
        sender_id: str,
        body: str,
        *,
        sender_display_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Message:
        async with self._lock:
            now = time.monotonic()

            if idempotency_key:
                self._purge_expired(now)
                seen = self._seen.get((room_id, sender_id, idempotency_key))
                if seen is not None:
                    logger.info(
                        "↺ Duplicate send %s from %s in room %s - returning message %s",
                        idempotency_key, sender_id, room_id, seen[0].id,
                    )
                    return seen[0].model_copy(update={"replayed": True, "delivered": seen[2]})

            self._seq += 1
            message = Message(
                id=self._seq,
                room_id=room_id,
                sender_id=sender_id,
                sender_display_name=sender_display_name or "",
                body=body,
                created_at=self.now(),
            )
            self._messages.setdefault(room_id, []).append(message)

            if idempotency_key:
                self._seen[(room_id, sender_id, idempotency_key)] = [
                    message,
                    now + self._idempotency_window,
                    False,
                ]
            return message

    async def mark_delivered(self, room_id: str, sender_id: str, idempotency_key: str) -> None:
        seen = self._seen.get((room_id, sender_id, idempotency_key))
        if seen is not None:
            seen[2] = True

    async def list_since(self, room_id: str, cursor: Optional[int] = None) -> List[Message]:
        messages = self._messages.get(room_id, [])
        if cursor is None:
            return list(messages)
        return [m for m in messages if m.id > cursor]

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at, _) in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]


def build_message_store(settings) -> MessageStore:
    """Pick the message store backend configured by MESSAGE_STORE."""
    if settings.MESSAGE_STORE == "redis":
        from tripchat.services.redis_message_store import RedisMessageStore

        return RedisMessageStore(
            url=settings.redis_url,
            key_prefix=settings.REDIS_KEY_PREFIX,
            idempotency_window=settings.IDEMPOTENCY_WINDOW_SECONDS,
            pending_ttl=settings.STORE_APPEND_TIMEOUT,
        )
    if settings.MESSAGE_STORE != "memory":
        raise ValueError(f"Unknown MESSAGE_STORE: {settings.MESSAGE_STORE!r}")
    return InMemoryMessageStore(idempotency_window=settings.IDEMPOTENCY_WINDOW_SECONDS)
