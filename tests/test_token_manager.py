"""
Tests for TokenManager

Tests cover:
- Fresh cached token served without calling the token endpoint
- Token inside the safety margin refreshed before use
- Single-flight refresh under concurrent callers
- Persisted tokens reused by a new manager
- Rejected refresh credential marks the connection error
- Provider-side failures on the token endpoint stay transient
"""

import asyncio
import pytest
from datetime import datetime, timedelta

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from channel_engine.models import ConnectionStatus, ConnectionToken, OperationClass
from channel_engine.services.errors import AuthError, TransportError
from channel_engine.services.token_manager import CachedToken, TokenManager

from conftest import fail, reply, seed_tokens

TOKEN_PATH = "/authentication/token"


class TestTokenReuse:
    """No refresh while a token is valid beyond the margin"""

    @pytest.mark.asyncio
    async def test_fresh_token_served_from_cache(self, token_manager, connection, provider):
        seed_tokens(token_manager, connection, token="cached", expires_in=timedelta(hours=1))

        token = await token_manager.get_token(connection, OperationClass.READ)

        assert token == "cached"
        assert token_manager.refresh_count == 0
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed(self, token_manager, connection, provider, db):
        seed_tokens(token_manager, connection, token="old", expires_in=timedelta(minutes=2))
        provider.add("GET", TOKEN_PATH, reply(200, {"token": "new", "expiresIn": 86400}))

        token = await token_manager.get_token(connection, OperationClass.WRITE)

        assert token == "new"
        assert token_manager.refresh_count == 1
        request = provider.calls("GET", TOKEN_PATH)[0]
        assert request.headers["refreshToken"] == "refresh-1"

        stored = db.query(ConnectionToken).filter(
            ConnectionToken.connection_id == connection.id,
            ConnectionToken.operation_class == "write"
        ).first()
        assert stored is not None
        assert stored.access_token == "new"
        assert stored.expires_at > datetime.utcnow() + timedelta(hours=23)

    @pytest.mark.asyncio
    async def test_read_and_write_tokens_cached_separately(self, token_manager, connection, provider):
        token_manager.cache.put(
            (connection.id, "read"),
            CachedToken("read-token", datetime.utcnow() + timedelta(hours=1))
        )
        provider.add("GET", TOKEN_PATH, reply(200, {"token": "write-token", "expiresIn": 3600}))

        assert await token_manager.get_token(connection, OperationClass.READ) == "read-token"
        assert await token_manager.get_token(connection, OperationClass.WRITE) == "write-token"
        assert token_manager.refresh_count == 1

    @pytest.mark.asyncio
    async def test_persisted_token_reused_by_new_manager(self, provider, session_factory, cipher, connection, db):
        db.add(ConnectionToken(
            connection_id=connection.id,
            operation_class="read",
            access_token="persisted",
            expires_at=datetime.utcnow() + timedelta(hours=3),
        ))
        db.commit()

        manager = TokenManager(provider.http_client(), session_factory=session_factory, cipher=cipher)
        token = await manager.get_token(connection, OperationClass.READ)

        assert token == "persisted"
        assert manager.refresh_count == 0
        assert provider.requests == []


class TestSingleFlight:
    """Concurrent callers share one refresh"""

    @pytest.mark.asyncio
    async def test_concurrent_callers_trigger_one_refresh(self, token_manager, connection, provider):
        provider.add("GET", TOKEN_PATH, reply(200, {"token": "shared", "expiresIn": 86400}, delay=0.05))

        tokens = await asyncio.gather(*[
            token_manager.get_token(connection, OperationClass.READ) for _ in range(5)
        ])

        assert tokens == ["shared"] * 5
        assert token_manager.refresh_count == 1
        assert len(provider.calls("GET", TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_forced_refresh_skipped_when_already_replaced(self, token_manager, connection, provider):
        seed_tokens(token_manager, connection, token="replacement")

        await token_manager.refresh(connection, OperationClass.READ, stale_token="rejected")

        assert token_manager.refresh_count == 0
        assert provider.requests == []


class TestRefreshFailures:
    """Tests for refresh failure handling"""

    @pytest.mark.asyncio
    async def test_rejected_credential_marks_connection_error(self, token_manager, connection, provider, db):
        provider.add("GET", TOKEN_PATH, reply(401, {"error": "invalid refresh token"}))

        with pytest.raises(AuthError):
            await token_manager.get_token(connection, OperationClass.READ)

        db.refresh(connection)
        assert connection.status == ConnectionStatus.ERROR.value
        assert "rejected" in connection.last_error
        assert connection.error_count == 1

    @pytest.mark.asyncio
    async def test_server_error_does_not_flip_status(self, token_manager, connection, provider, db):
        provider.add("GET", TOKEN_PATH, reply(503))

        with pytest.raises(TransportError):
            await token_manager.get_token(connection, OperationClass.READ)

        db.refresh(connection)
        assert connection.status == ConnectionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self, token_manager, connection, provider, db):
        provider.add("GET", TOKEN_PATH, fail())

        with pytest.raises(TransportError):
            await token_manager.get_token(connection, OperationClass.READ)

        db.refresh(connection)
        assert connection.status == ConnectionStatus.ACTIVE.value
        assert connection.error_count == 1

    @pytest.mark.asyncio
    async def test_disabled_connection_refused(self, token_manager, connection, db):
        connection.status = ConnectionStatus.DISABLED.value
        db.commit()

        with pytest.raises(AuthError):
            await token_manager.get_token(connection, OperationClass.READ)

    @pytest.mark.asyncio
    async def test_rotated_refresh_credential_is_stored(self, token_manager, connection, provider, db, cipher):
        provider.add("GET", TOKEN_PATH, reply(200, {
            "token": "new", "expiresIn": 86400, "refreshToken": "refresh-2"
        }))

        await token_manager.get_token(connection, OperationClass.READ)

        db.refresh(connection)
        assert cipher.decrypt(connection.refresh_credential_encrypted) == "refresh-2"
