# tripchat/services/gateway.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

from tripchat.core.config import Settings
from tripchat.core.errors import (
    AuthenticationRequired,
    ChatError,
    NotAMember,
    NotJoined,
    StoreUnavailable,
    ValidationError,
)
from tripchat.models.models import Identity, Message
from tripchat.services.membership import MembershipDirectory
from tripchat.services.message_store import MessageStore
from tripchat.services.room_registry import RoomRegistry
from tripchat.services.session import HandleState, SessionHandle, Transport

logger = logging.getLogger(__name__)

# ============================================================================
# REALTIME CHAT GATEWAY
# ============================================================================

class ChatGateway:
    """
    Single authority for chat connections and message routing.

    One instance per process, built at startup and handed to the websocket
    endpoint and the HTTP routes. It is the only code that mutates the
    RoomRegistry or appends chat messages to the MessageStore.

    Handle lifecycle:
        CONNECTING -> AUTHENTICATED (identity attached)
                   -> ACTIVE (first join)
                   -> CLOSED (disconnect, from any state)

    Send path:
        1. validate body, check the handle joined the room
        2. append to the store (the only await that can suspend for long,
           bounded by STORE_APPEND_TIMEOUT); nothing is visible yet
        3. under the room's fan-out lock, snapshot the members and push the
           canonical message to each of them, sender included
        A failed append produces no broadcast and no stored message. The
        gateway never retries an append on its own. A retry with the same
        idempotency key is broadcast only if the first attempt never was.
    """

    def __init__(
        self,
        store: MessageStore,
        membership: MembershipDirectory,
        settings: Settings,
        registry: Optional[RoomRegistry] = None,
    ) -> None:
        self.store = store
        self.membership = membership
        self.settings = settings
        self.registry = registry or RoomRegistry()
        self.handles: set[SessionHandle] = set()
        self._fanout_locks: Dict[str, asyncio.Lock] = {}
        self._fanout_waiters: Dict[str, int] = {}

        # Metrics
        self.message_counter = 0
        self.failed_sends = 0
        self.started_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, transport: Transport, identity: Optional[Identity] = None) -> SessionHandle:
        """
        Register a new connection.

        Without an identity the handle stays CONNECTING and every join or
        send on it is refused with AuthenticationRequired.
        """
        handle = SessionHandle(transport, identity)
        self.handles.add(handle)
        logger.info("✓ User %s connected. Total: %d", handle.user_id or "unauthenticated", len(self.handles))
        return handle

    async def disconnect(self, handle: SessionHandle) -> None:
        """
        Close ``handle`` and drop it from every room it joined.

        Registry cleanup happens before any await, so no other operation
        can observe a half-removed handle. Safe to call more than once.
        """
        if handle.is_closed:
            return

        handle.state = HandleState.CLOSED
        left = self.registry.remove_handle(handle)
        self.handles.discard(handle)
        logger.info(
            "✗ User %s disconnected (left %d rooms). Total: %d",
            handle.user_id or "unauthenticated", len(left), len(self.handles),
        )

        if self.settings.BROADCAST_PRESENCE:
            for room_id in left:
                await self._broadcast_presence(room_id)

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    async def join(self, handle: SessionHandle, room_id: str) -> bool:
        """Subscribe to a room. Returns False when the handle is already closed."""
        if handle.is_closed:
            return False
        if not handle.is_authenticated:
            raise AuthenticationRequired("Join requires an authenticated connection", room_id=room_id)

        allowed = await self.can_view(handle.user_id, room_id)
        # The handle may have gone away while we waited on the membership check
        if handle.is_closed:
            return False
        if not allowed:
            logger.warning("⛔ %s refused entry to room %s", handle.user_id, room_id)
            raise NotAMember("You are not a member of this trip", room_id=room_id)

        member_count = self.registry.add_to_room(room_id, handle)
        handle.state = HandleState.ACTIVE
        logger.info("→ %s joined '%s' (%s members)", handle.user_id, room_id, member_count)

        if self.settings.BROADCAST_PRESENCE:
            await self._broadcast_presence(room_id)
        return True

    async def leave(self, handle: SessionHandle, room_id: str) -> bool:
        """Unsubscribe from a room. Leaving a room you are not in is a no-op."""
        if handle.is_closed:
            return False
        removed = self.registry.remove_from_room(room_id, handle)
        if removed:
            logger.info("← %s left '%s'", handle.user_id, room_id)
            if self.settings.BROADCAST_PRESENCE:
                await self._broadcast_presence(room_id)
        return removed

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def validate_body(self, body: Optional[str], room_id: Optional[str] = None) -> str:
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message body must not be empty", room_id=room_id)
        if len(text) > self.settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message body exceeds {self.settings.MAX_MESSAGE_LENGTH} characters",
                room_id=room_id,
            )
        return text

    async def send(
        self,
        handle: SessionHandle,
        room_id: str,
        body: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Persist a chat message and fan it out to the room.

        Returns the canonical message, or None when the handle is closed.
        Raises a ChatError subclass for every refusal; in that case nothing
        was stored and nothing was broadcast.
        """
        if handle.is_closed:
            return None
        if not handle.is_authenticated:
            raise AuthenticationRequired("Send requires an authenticated connection", room_id=room_id)
        if not self.registry.is_member(room_id, handle):
            raise NotJoined("Join the room before sending to it", room_id=room_id)
        text = self.validate_body(body, room_id)

        identity = handle.identity
        try:
            message = await asyncio.wait_for(
                self.store.append(
                    room_id,
                    identity.user_id,
                    text,
                    sender_display_name=identity.display_name,
                    idempotency_key=idempotency_key,
                ),
                timeout=self.settings.STORE_APPEND_TIMEOUT,
            )
        except asyncio.TimeoutError:
            self.failed_sends += 1
            logger.error("Store append timed out after %ss (room=%s)", self.settings.STORE_APPEND_TIMEOUT, room_id)
            raise StoreUnavailable("Message store timed out", room_id=room_id)
        except ChatError:
            self.failed_sends += 1
            raise
        except Exception as e:
            self.failed_sends += 1
            logger.exception("Store append failed (room=%s)", room_id)
            raise StoreUnavailable(f"Message could not be saved: {e}", room_id=room_id) from e

        if message.replayed and message.delivered:
            # Retried send: the room already got this message the first time
            logger.info("↺ %s resent message %s to room %s - not broadcasting again", identity.user_id, message.id, room_id)
            return message

        self.message_counter += 1
        await self.broadcast(room_id, "new-message", message.to_payload())
        if idempotency_key:
            await self._mark_delivered(room_id, identity.user_id, idempotency_key)
        return message

    async def _mark_delivered(self, room_id: str, sender_id: str, idempotency_key: str) -> None:
        try:
            await self.store.mark_delivered(room_id, sender_id, idempotency_key)
        except Exception:
            # A retry will broadcast the message once more; clients dedupe by id
            logger.warning("Could not mark message %s as delivered (room=%s)", idempotency_key, room_id, exc_info=True)

    async def history(self, room_id: str, cursor: Optional[int] = None) -> List[Message]:
        """Persisted messages for page-load backfill, oldest first."""
        try:
            return await self.store.list_since(room_id, cursor)
        except Exception as e:
            logger.exception("History read failed (room=%s)", room_id)
            raise StoreUnavailable(f"History unavailable: {e}", room_id=room_id) from e

    async def can_view(self, user_id: str, room_id: str) -> bool:
        """Ask the membership directory; an unreachable directory means no."""
        try:
            return await self.membership.can_view(user_id, room_id)
        except Exception:
            logger.exception("Membership check failed (user=%s, room=%s)", user_id, room_id)
            return False

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast(self, room_id: str, event: str, data: dict) -> int:
        """
        Push one event to every handle in the room.

        Fan-out for a room holds that room's lock from the member snapshot to
        the last send, so every recipient sees the room's broadcasts in the
        same order even when a transport is slow. Handles whose transport
        fails are disconnected after the lock is released.
        """
        failed = []
        delivered = 0
        async with self._fanout_lock(room_id):
            members = self.registry.members_of(room_id)
            if not members:
                # No one subscribed to this room currently
                logger.info("[routing] Skipped broadcast: room=%s has 0 subscribers", room_id)
                return 0

            logger.info("📨 Broadcasting %s to room %s: %d clients", event, room_id, len(members))

            for handle in members:
                try:
                    await handle.emit(event, data)
                    delivered += 1
                except Exception as e:
                    logger.error(f"Send error to {handle!r}: {e}")
                    failed.append(handle)

        # Clean up failed connections
        for handle in failed:
            await self.disconnect(handle)
        return delivered

    @contextlib.asynccontextmanager
    async def _fanout_lock(self, room_id: str) -> AsyncIterator[None]:
        lock = self._fanout_locks.get(room_id)
        if lock is None:
            lock = self._fanout_locks[room_id] = asyncio.Lock()
        self._fanout_waiters[room_id] = self._fanout_waiters.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once nobody holds or waits for it
            self._fanout_waiters[room_id] -= 1
            if not self._fanout_waiters[room_id]:
                del self._fanout_waiters[room_id]
                del self._fanout_locks[room_id]

    async def _broadcast_presence(self, room_id: str) -> None:
        await self.broadcast(
            room_id,
            "online-users",
            {"roomId": room_id, "userIds": self.registry.user_ids_in(room_id)},
        )

