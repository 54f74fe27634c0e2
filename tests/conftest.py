"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for token verification
os.environ.setdefault("AUTH_SECRET_KEY", "test-secret-key")
os.environ.setdefault("MESSAGE_STORE", "memory")
os.environ.setdefault("MEMBERSHIP_BACKEND", "open")

import asyncio

import pytest

from tripchat.core.config import Settings
from tripchat.models.models import Identity
from tripchat.services.gateway import ChatGateway
from tripchat.services.membership import OpenMembership
from tripchat.services.message_store import InMemoryMessageStore


class FakeTransport:
    """Records every frame pushed to it, like a connected websocket would."""

    def __init__(self, fail: bool = False, delay: float = 0) -> None:
        self.sent: list = []
        self.fail = fail
        self.delay = delay

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        if self.delay:
            # A slow client: the event loop runs other work meanwhile
            await asyncio.sleep(self.delay)
        self.sent.append(data)

    def events(self, name: str) -> list:
        return [frame["data"] for frame in self.sent if frame["event"] == name]


class CountingStore(InMemoryMessageStore):
    """In-memory store that counts append attempts."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.append_calls = 0

    async def append(self, room_id, sender_id, body, **kwargs):  # type: ignore[override]
        self.append_calls += 1
        return await super().append(room_id, sender_id, body, **kwargs)


class FailingStore(CountingStore):
    async def append(self, room_id, sender_id, body, **kwargs):  # type: ignore[override]
        self.append_calls += 1
        raise ConnectionError("database is down")


class HangingStore(CountingStore):
    async def append(self, room_id, sender_id, body, **kwargs):  # type: ignore[override]
        self.append_calls += 1
        await asyncio.sleep(10)
        raise AssertionError("append should have timed out")


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.MESSAGE_STORE = "memory"
    s.MEMBERSHIP_BACKEND = "open"
    s.BROADCAST_PRESENCE = False
    s.MAX_MESSAGE_LENGTH = 2000
    s.STORE_APPEND_TIMEOUT = 5.0
    return s


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def gateway(store, settings) -> ChatGateway:
    return ChatGateway(store=store, membership=OpenMembership(), settings=settings)


@pytest.fixture
def alice() -> Identity:
    return Identity(user_id="user_alice", display_name="Alice")


@pytest.fixture
def bob() -> Identity:
    return Identity(user_id="user_bob", display_name="Bob")
