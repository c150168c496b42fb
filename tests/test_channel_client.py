"""
Tests for ChannelClient

Tests cover:
- Token attachment and usage telemetry on success
- 401 -> exactly one refresh and one retry
- Second 401 -> AuthError and connection marked error
- 429 waits at least the provider's reset window
- 429 beyond the attempt ceiling -> RateLimitExceeded
- Transport failures retried with exponential backoff
- Other non-2xx answers raised as ProviderError without retry
- Proactive pause when the credit window is nearly spent
- Setup-code exchange sent without a token
"""

import pytest
from datetime import datetime, timedelta

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from channel_engine.models import ConnectionStatus, UsageRecord
from channel_engine.services.errors import AuthError, ProviderError, RateLimitExceeded, TransportError
from channel_engine.services.retry_policy import RetryKind, RetryPolicy
from channel_engine.services.token_manager import CachedToken

from conftest import credit_headers, fail, reply, seed_tokens

TOKEN_PATH = "/authentication/token"
PROPERTIES_PATH = "/properties"


class TestSuccess:

    @pytest.mark.asyncio
    async def test_token_attached_and_usage_parsed(self, channel_client, token_manager, connection, provider, db):
        seed_tokens(token_manager, connection, token="tok-1")
        provider.add("GET", PROPERTIES_PATH, reply(200, {"data": [{"id": 1}]}, headers=credit_headers(90, 120, 2)))

        data, usage = await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)
        await channel_client.usage_recorder.drain()

        assert data == {"data": [{"id": 1}]}
        assert usage.remaining == 90
        assert usage.resets_in == 120.0
        assert usage.request_cost == 2
        request = provider.calls("GET", PROPERTIES_PATH)[0]
        assert request.headers["token"] == "tok-1"
        assert request.headers["X-Request-ID"] == "test-req"

        records = db.query(UsageRecord).filter(UsageRecord.connection_id == connection.id).all()
        assert len(records) == 1
        assert records[0].remaining == 90
        assert records[0].status_code == 200

    @pytest.mark.asyncio
    async def test_write_calls_use_write_token(self, channel_client, token_manager, connection, provider):
        expires_at = datetime.utcnow() + timedelta(hours=1)
        token_manager.cache.put((connection.id, "read"), CachedToken("read-tok", expires_at))
        token_manager.cache.put((connection.id, "write"), CachedToken("write-tok", expires_at))
        provider.add("POST", "/inventory/rooms/calendar", reply(200, [{"success": True}]))

        await channel_client.call("/inventory/rooms/calendar", "POST", {"data": []}, connection)

        assert provider.requests[0].headers["token"] == "write-tok"


class TestAuthRetry:

    @pytest.mark.asyncio
    async def test_single_401_triggers_exactly_one_refresh(self, channel_client, token_manager, connection, provider):
        seed_tokens(token_manager, connection, token="expired-upstream")
        provider.add("GET", PROPERTIES_PATH, reply(401), reply(200, {"data": []}))
        provider.add("GET", TOKEN_PATH, reply(200, {"token": "tok-2", "expiresIn": 86400}))

        data, _ = await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert data == {"data": []}
        assert token_manager.refresh_count == 1
        assert len(provider.calls("GET", TOKEN_PATH)) == 1
        attempts = provider.calls("GET", PROPERTIES_PATH)
        assert [r.headers["token"] for r in attempts] == ["expired-upstream", "tok-2"]

    @pytest.mark.asyncio
    async def test_second_401_raises_auth_error(self, channel_client, token_manager, connection, provider, db):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, reply(401))
        provider.add("GET", TOKEN_PATH, reply(200, {"token": "tok-2", "expiresIn": 86400}))

        with pytest.raises(AuthError):
            await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert token_manager.refresh_count == 1
        assert len(provider.calls("GET", PROPERTIES_PATH)) == 2
        db.refresh(connection)
        assert connection.status == ConnectionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_authenticated_call_requires_connection(self, channel_client):
        with pytest.raises(AuthError):
            await channel_client.call(PROPERTIES_PATH, "GET")


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_429_waits_at_least_reset_window(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        channel_client.retry_policy.rng = lambda: 0.5
        provider.add(
            "GET", PROPERTIES_PATH,
            reply(429, headers=credit_headers(0, 42)),
            reply(200, {"data": []}, headers=credit_headers(100, 300)),
        )

        await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert len(fake_sleep.calls) == 1
        assert fake_sleep.calls[0] >= 42.0
        assert len(provider.calls("GET", PROPERTIES_PATH)) == 2

    @pytest.mark.asyncio
    async def test_retry_after_header_preferred(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        provider.add(
            "GET", PROPERTIES_PATH,
            reply(429, headers={"Retry-After": "7"}),
            reply(200, {}),
        )

        await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert fake_sleep.calls == [7.0]

    @pytest.mark.asyncio
    async def test_429_beyond_ceiling_raises(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, reply(429, headers=credit_headers(0, 42)))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert exc_info.value.retry_after == 42.0
        assert len(provider.calls("GET", PROPERTIES_PATH)) == 3
        assert len(fake_sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_low_credit_pauses_next_call(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, reply(200, {}, headers=credit_headers(5, 60)))

        await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)
        assert fake_sleep.calls == []

        await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)
        assert fake_sleep.calls == [60.0]


class TestTransport:

    @pytest.mark.asyncio
    async def test_transport_errors_retried_with_backoff(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, fail(), fail(), reply(200, {"ok": True}))

        data, _ = await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert data == {"ok": True}
        assert fake_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_transport_errors_exhausted(self, channel_client, token_manager, connection, provider):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, fail())

        with pytest.raises(TransportError):
            await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert len(provider.calls("GET", PROPERTIES_PATH)) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_and_transport_share_ceiling(self, channel_client, token_manager, connection, provider):
        seed_tokens(token_manager, connection)
        provider.add("GET", PROPERTIES_PATH, fail(), reply(429, headers={"Retry-After": "1"}), fail())

        with pytest.raises(TransportError):
            await channel_client.call(PROPERTIES_PATH, "GET", connection=connection)

        assert len(provider.calls("GET", PROPERTIES_PATH)) == 3


class TestProviderErrors:

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self, channel_client, token_manager, connection, provider, fake_sleep):
        seed_tokens(token_manager, connection)
        provider.add("POST", "/bookings", reply(422, {"error": "arrival required"}))

        with pytest.raises(ProviderError) as exc_info:
            await channel_client.call("/bookings", "POST", {"arrival": None}, connection)

        assert exc_info.value.status == 422
        assert "arrival required" in exc_info.value.message
        assert len(provider.requests) == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_known_status_described_without_body(self, channel_client, token_manager, connection, provider):
        seed_tokens(token_manager, connection)
        provider.add("GET", "/bookings", reply(403, {}))

        with pytest.raises(ProviderError) as exc_info:
            await channel_client.call("/bookings", "GET", connection=connection)

        assert exc_info.value.message == "Provider error 403: Access denied to this resource"


class TestSetupExchange:

    @pytest.mark.asyncio
    async def test_setup_code_exchanged_without_token(self, channel_client, provider):
        provider.add("GET", "/authentication/setup", reply(200, {
            "token": "access-1", "expiresIn": 86400, "refreshToken": "refresh-9"
        }))

        grant = await channel_client.exchange_setup_code("invite-code", "pms-test")

        request = provider.requests[0]
        assert request.headers["code"] == "invite-code"
        assert request.headers["deviceName"] == "pms-test"
        assert "token" not in request.headers
        assert grant.refresh_token == "refresh-9"
        assert grant.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_rejected_setup_code(self, channel_client, provider):
        provider.add("GET", "/authentication/setup", reply(401, {"error": "code expired"}))

        with pytest.raises(AuthError):
            await channel_client.exchange_setup_code("stale-code")


class TestRetryPolicy:

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)

        assert policy.delay(RetryKind.TRANSPORT, 0) == 1.0
        assert policy.delay(RetryKind.TRANSPORT, 2) == 4.0
        assert policy.delay(RetryKind.TRANSPORT, 6) == 5.0

    def test_auth_allows_one_retry(self):
        policy = RetryPolicy()

        assert policy.allows(RetryKind.AUTH, 1)
        assert not policy.allows(RetryKind.AUTH, 2)

    def test_quota_delay_progressive(self):
        policy = RetryPolicy(low_quota_floor=50)

        assert policy.quota_delay(80, 100) == 0.0
        assert policy.quota_delay(30, 100) == 10.0
        assert policy.quota_delay(20, 100) == 50.0
        assert policy.quota_delay(5, 100) == 100.0
