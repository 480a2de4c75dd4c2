import asyncio
import os

os.environ.setdefault("JWT_SECRET", "test-secret-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from itemchat.core.config import get_settings
from itemchat.main import create_app
from itemchat.realtime.bus import NoopBus
from itemchat.repositories.message_repository import MessageRepository
from itemchat.services import build_services
from itemchat.utils.security import create_access_token


ITEMS = [
    {"_id": "item-bike", "title": "Blue bike", "owner_id": "u2"},
    {"_id": "item-lamp", "title": "Desk lamp", "owner_id": "u3"},
]

PROFILES = [
    {"_id": "u1", "full_name": "Ada"},
    {"_id": "u2", "full_name": "Brook"},
    {"_id": "u3", "full_name": "Cyd"},
]


async def seed(db) -> None:
    await db["items"].insert_many([dict(doc) for doc in ITEMS])
    await db["profiles"].insert_many([dict(doc) for doc in PROFILES])


@pytest.fixture
def settings():
    return get_settings().model_copy(update={"SUBSCRIPTION_BUFFER_SIZE": 3, "SUMMARY_CACHE_TTL": 60.0, "SEQ_SETTLE_TIMEOUT": 0.5})


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["itemchat_test"]
    await seed(database)
    return database


@pytest.fixture
async def services(db, settings):
    chat = build_services(db, settings, NoopBus())
    await chat.ensure_indexes(db)
    yield chat
    await chat.channel.close()


@pytest.fixture
def client(settings):
    database = AsyncMongoMockClient()["itemchat_http"]
    asyncio.run(seed(database))
    app = create_app(settings, db=database, bus=NoopBus())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth():
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _headers


@pytest.fixture
def stall_insert(monkeypatch):
    """Make the message insert for a given seq await ``gate()`` first, as a slow write would."""
    gates = {}
    original = MessageRepository.save_message

    async def save_message(self, conversation_id, sender_id, content, seq):
        gate = gates.get(seq)
        if gate is not None:
            await gate()
        return await original(self, conversation_id, sender_id, content, seq)

    monkeypatch.setattr(MessageRepository, "save_message", save_message)

    def _stall(seq: int, gate) -> None:
        gates[seq] = gate
    return _stall


@pytest.fixture
def held_insert(stall_insert):
    """Hold one seq's insert until ``release`` is set; ``claimed`` is set once the seq was handed out."""
    def _hold(seq: int):
        claimed, release = asyncio.Event(), asyncio.Event()

        async def gate():
            claimed.set()
            await release.wait()

        stall_insert(seq, gate)
        return claimed, release
    return _hold
