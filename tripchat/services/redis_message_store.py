# tripchat/services/redis_message_store.py
from __future__ import annotations

import logging
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from tripchat.core.errors import StoreUnavailable
from tripchat.models.models import Message
from tripchat.services.message_store import MessageStore

logger = logging.getLogger(__name__)

_PENDING = "__pending__"


class RedisMessageStore(MessageStore):
    """
    Message log kept in Redis.

    Key layout (prefix defaults to "tripchat"):
        {prefix}:messages:seq                       INCR counter, one id space for all rooms
        {prefix}:room:{room_id}:messages            sorted set, member = message JSON, score = id
        {prefix}:idem:{room_id}:{sender_id}:{key}   claimed with SET NX PX, then holds the message JSON
        {prefix}:idem:...:{key}:delivered           set once the message was broadcast

    A claim lives at most pending_ttl while the append is in flight, and is
    released as soon as the append fails or is cancelled.

    Ids come from INCR, so id order is the order Redis serialized the appends in,
    and a room's sorted set read by score is its history in append order.
    """

    name = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        key_prefix: str = "tripchat",
        idempotency_window: int = 300,
        pending_ttl: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self.idempotency_window = idempotency_window
        self._pending_ttl_ms = max(1000, int(pending_ttl * 1000))
        self.client = client

    async def connect(self):
        """Establish async connection to Redis."""
        if self.client is None:
            self.client = redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        logger.info("✓ Message store connected to Redis")

    def _seq_key(self) -> str:
        return f"{self.key_prefix}:messages:seq"

    def _room_key(self, room_id: str) -> str:
        return f"{self.key_prefix}:room:{room_id}:messages"

    def _idem_key(self, room_id: str, sender_id: str, key: str) -> str:
        return f"{self.key_prefix}:idem:{room_id}:{sender_id}:{key}"

    @staticmethod
    def _delivered_key(idem_key: str) -> str:
        return f"{idem_key}:delivered"

    async def append(
        self,
        room_id: str,
        sender_id: str,
        body: str,
        *,
        sender_display_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Message:
        idem_key = None
        if idempotency_key:
            idem_key = self._idem_key(room_id, sender_id, idempotency_key)
            claimed = await self.client.set(idem_key, _PENDING, nx=True, px=self._pending_ttl_ms)
            if not claimed:
                existing, delivered = await self.client.mget(idem_key, self._delivered_key(idem_key))
                if existing and existing != _PENDING:
                    logger.info("↺ Duplicate send %s from %s in room %s", idempotency_key, sender_id, room_id)
                    return Message.model_validate_json(existing).model_copy(
                        update={"replayed": True, "delivered": bool(delivered)}
                    )
                raise StoreUnavailable(
                    "A send with this idempotency key is still in progress", room_id=room_id
                )

        try:
            message_id = await self.client.incr(self._seq_key())
            message = Message(
                id=message_id,
                room_id=room_id,
                sender_id=sender_id,
                sender_display_name=sender_display_name or "",
                body=body,
                created_at=self.now(),
            )
            payload = message.model_dump_json()

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(self._room_key(room_id), {payload: message_id})
                if idem_key:
                    pipe.set(idem_key, payload, ex=self.idempotency_window)
                await pipe.execute()
        except BaseException:
            # Also reached when the caller's timeout cancels us
            if idem_key:
                await self._release_claim(idem_key)
            raise

        logger.debug("Stored message %s in room %s", message.id, room_id)
        return message

    async def _release_claim(self, idem_key: str) -> None:
        """Drop a claim that is still pending so a retry can append."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(idem_key)
                if await pipe.get(idem_key) == _PENDING:
                    pipe.multi()
                    pipe.delete(idem_key)
                    await pipe.execute()
        except WatchError:
            # The message was committed after all; keep it
            logger.debug("Claim %s was committed while releasing it", idem_key)
        except Exception:
            logger.warning(
                "Could not release claim %s, it expires in %dms", idem_key, self._pending_ttl_ms, exc_info=True
            )

    async def mark_delivered(self, room_id: str, sender_id: str, idempotency_key: str) -> None:
        idem_key = self._idem_key(room_id, sender_id, idempotency_key)
        await self.client.set(self._delivered_key(idem_key), "1", ex=self.idempotency_window)

    async def list_since(self, room_id: str, cursor: Optional[int] = None) -> List[Message]:
        min_score = f"({cursor}" if cursor is not None else "-inf"
        raw = await self.client.zrangebyscore(self._room_key(room_id), min_score, "+inf")
        return [Message.model_validate_json(item) for item in raw]

    async def close(self):
        """Close connections."""
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
