"""
Shared fixtures: in-memory database, stub provider over httpx.MockTransport,
recording sleep, and a linked connection with one mapped room.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from channel_engine.config import settings
from channel_engine.database import Base
from channel_engine.models import ChannelConnection, PropertyMapping, RoomMapping, ConnectionStatus
from channel_engine.services.channel_client import ChannelClient, UsageRecorder
from channel_engine.services.retry_policy import RetryPolicy
from channel_engine.services.token_manager import CachedToken, TokenManager
from channel_engine.utils.security import CredentialCipher, generate_encryption_key


BASE_PATH = httpx.URL(settings.channel_base_url).path.rstrip("/")


def reply(status=200, json=None, headers=None, delay=0.0):
    """Response factory for ProviderStub routes"""
    async def _reply(request):
        if delay:
            await asyncio.sleep(delay)
        return httpx.Response(status, json=json, headers=headers)
    return _reply


def fail(message="connection refused"):
    """Route item that raises a network error"""
    def _fail(request):
        raise httpx.ConnectError(message, request=request)
    return _fail


def credit_headers(remaining, resets_in=300, cost=1):
    return {
        settings.rate_limit_remaining_header: str(remaining),
        settings.rate_limit_resets_in_header: str(resets_in),
        settings.rate_limit_cost_header: str(cost),
    }


class ProviderStub:
    """
    Routes requests by (method, path relative to the API base).

    Each route holds a queue of items; the last item answers every
    further request.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, *items):
        self.routes.setdefault((method.upper(), path), []).extend(items)
        return self

    async def handler(self, request):
        self.requests.append(request)
        path = request.url.path[len(BASE_PATH):]
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.method} {path}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        result = item(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def calls(self, method, path):
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path[len(BASE_PATH):] == path
        ]

    def http_client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeSleep:
    """Records requested delays instead of sleeping"""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cipher():
    return CredentialCipher(generate_encryption_key())


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def retry_policy(fake_sleep):
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=0.5, rng=lambda: 0.0, sleep=fake_sleep)


@pytest.fixture
def token_manager(provider, session_factory, cipher):
    return TokenManager(provider.http_client(), session_factory=session_factory, cipher=cipher)


@pytest.fixture
def channel_client(token_manager, session_factory, retry_policy):
    return ChannelClient(
        token_manager,
        usage_recorder=UsageRecorder(session_factory),
        retry_policy=retry_policy,
        request_id="test-req",
    )


@pytest.fixture
def connection(db, cipher):
    conn = ChannelConnection(
        hotel_id="hotel-1",
        provider="beds24",
        refresh_credential_encrypted=cipher.encrypt("refresh-1"),
        status=ConnectionStatus.ACTIVE.value,
        scopes=["read:inventory", "write:inventory"],
    )
    db.add(conn)
    db.commit()
    return conn


@pytest.fixture
def property_mapping(db, connection):
    mapping = PropertyMapping(
        connection_id=connection.id,
        hotel_id="hotel-1",
        remote_property_id="P1",
        name="Seaside",
    )
    db.add(mapping)
    db.commit()
    return mapping


@pytest.fixture
def room_mapping(db, property_mapping):
    mapping = RoomMapping(
        property_mapping_id=property_mapping.id,
        local_room_type_id="rt-1",
        remote_room_id="R1",
    )
    db.add(mapping)
    db.commit()
    return mapping


def seed_tokens(token_manager, connection, token="tok-1", expires_in=timedelta(hours=2)):
    """Put fresh read and write tokens in the cache"""
    expires_at = datetime.utcnow() + expires_in
    for op_class in ("read", "write"):
        token_manager.cache.put((connection.id, op_class), CachedToken(token, expires_at))
