"""
Rate-Aware Channel Client

Async HTTP client for the channel provider that handles:
- Token attachment via the Token Manager (skipped for the setup exchange)
- Rate-limit telemetry parsed from every response into a UsageSnapshot
- Usage records persisted in the background (never fails the call)
- Proactive pause when the current credit window is nearly spent
- 429: wait the stated reset window (or exponential backoff) and retry
- 401: one forced token refresh and one retry
- Network failures / timeouts: exponential backoff with jitter
- Any other non-2xx: ProviderError, not retried
"""

import time
from datetime import datetime
import logging
from typing import Any, Dict, Optional, Set, Tuple

import asyncio
import httpx

from ..config import settings as default_settings
from ..database import SessionLocal
from ..models.channel_connection import ChannelConnection, OperationClass
from ..models.usage_record import UsageRecord
from ..utils.logging_config import request_id_var
from ..utils.security import sanitize_payload
from .errors import AuthError, ProviderError, RateLimitExceeded, TransportError
from .provider_payloads import TokenGrant, UsageSnapshot
from .retry_policy import RetryKind, RetryPolicy
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def operation_class_for(method: str) -> OperationClass:
    """Writes and reads use separately cached tokens"""
    return OperationClass.WRITE if method.upper() in WRITE_METHODS else OperationClass.READ


class UsageRecorder:
    """
    Persists UsageRecords from background tasks and keeps the latest
    snapshot per connection for backoff decisions.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self.latest: Dict[str, UsageSnapshot] = {}
        self._tasks: Set[asyncio.Task] = set()

    def record(
        self,
        connection_id: str,
        path: str,
        method: str,
        status_code: int,
        usage: UsageSnapshot,
        duration_ms: Optional[int] = None
    ) -> None:
        if usage.has_data:
            self.latest[connection_id] = usage
        task = asyncio.create_task(self._persist(connection_id, path, method, status_code, usage, duration_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist(
        self,
        connection_id: str,
        path: str,
        method: str,
        status_code: int,
        usage: UsageSnapshot,
        duration_ms: Optional[int]
    ):
        try:
            db = self.session_factory()
            try:
                db.add(UsageRecord(
                    connection_id=connection_id,
                    path=path[:255],
                    method=method,
                    status_code=status_code,
                    remaining=usage.remaining,
                    resets_in=usage.resets_in,
                    request_cost=usage.request_cost,
                    duration_ms=duration_ms,
                ))
                connection = db.get(ChannelConnection, connection_id)
                if connection is not None:
                    connection.last_used_at = datetime.utcnow()
                db.commit()
            finally:
                db.close()
        except Exception as e:
            logger.warning(f"[{connection_id}] Failed to persist usage record: {e}")

    def take_latest(self, connection_id: str) -> Optional[UsageSnapshot]:
        return self.latest.pop(connection_id, None)

    async def drain(self) -> None:
        """Wait for pending usage writes"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ChannelClient:
    """
    Production client for channel provider operations.

    call() returns (data, usage) on 2xx and raises one of AuthError,
    RateLimitExceeded, TransportError or ProviderError otherwise.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings=None,
        request_id: Optional[str] = None
    ):
        self.token_manager = token_manager
        self.http_client = http_client or token_manager.http_client
        self.settings = settings or default_settings
        self.usage_recorder = usage_recorder or UsageRecorder()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.base_url = self.settings.channel_base_url
        self.timeout = self.settings.channel_timeout_seconds
        self._request_id = request_id

    @property
    def request_id(self) -> str:
        return self._request_id or request_id_var.get() or "no-request-id"

    def _get_headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "channel-engine/1.0",
            "X-Request-ID": self.request_id,
        }
        if extra:
            headers.update(extra)
        return headers

    def _parse_usage(self, response: httpx.Response) -> UsageSnapshot:
        return UsageSnapshot.from_headers(
            response.headers,
            self.settings.rate_limit_remaining_header,
            self.settings.rate_limit_resets_in_header,
            self.settings.rate_limit_cost_header,
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _respect_quota(self, connection: Optional[ChannelConnection]) -> None:
        if connection is None:
            return
        snapshot = self.usage_recorder.take_latest(connection.id)
        if snapshot is None:
            return
        wait = self.retry_policy.quota_delay(snapshot.remaining, snapshot.resets_in)
        if wait > 0:
            logger.warning(
                f"[{self.request_id}] Only {snapshot.remaining} credits left, "
                f"pausing {wait:.1f}s before next call"
            )
            await self.retry_policy.sleep(wait)

    async def call(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        connection: Optional[ChannelConnection] = None,
        operation_class: Optional[OperationClass] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticate: bool = True
    ) -> Tuple[Any, UsageSnapshot]:
        """
        Make an HTTP request to the provider with token, telemetry and retry handling.
        """
        method = method.upper()
        if authenticate and connection is None:
            raise AuthError("Authenticated call without a connection")
        op_class = operation_class or operation_class_for(method)
        url = f"{self.base_url}{path}"
        policy = self.retry_policy

        await self._respect_quota(connection)

        failures = 0
        auth_failures = 0
        while True:
            request_headers = self._get_headers(headers)
            token = None
            if authenticate:
                token = await self.token_manager.get_token(connection, op_class)
                request_headers[self.settings.channel_auth_header] = token

            start_time = time.monotonic()
            try:
                response = await self.http_client.request(
                    method,
                    url,
                    headers=request_headers,
                    json=body,
                    params=params,
                    timeout=self.timeout,
                )
            except httpx.TransportError as e:
                failures += 1
                if not policy.allows(RetryKind.TRANSPORT, failures):
                    logger.error(f"[{self.request_id}] {method} {path} failed after {failures} attempts: {e}")
                    raise TransportError(f"{method} {path} failed after {failures} attempts: {e}")
                delay = await policy.wait(RetryKind.TRANSPORT, failures - 1)
                logger.warning(f"[{self.request_id}] {method} {path} transport error: {e!r}, retried after {delay:.2f}s")
                continue

            duration_ms = int((time.monotonic() - start_time) * 1000)
            status_code = response.status_code
            usage = self._parse_usage(response)
            if connection is not None:
                self.usage_recorder.record(connection.id, path, method, status_code, usage, duration_ms)
            data = self._parse_body(response)

            logger.debug(
                f"[{self.request_id}] {method} {path} -> {status_code} ({duration_ms}ms, "
                f"remaining={usage.remaining}, cost={usage.request_cost})"
            )

            # Success
            if 200 <= status_code < 300:
                return data, usage

            # Rate limited - wait for the window and retry
            if status_code == 429:
                failures += 1
                if not policy.allows(RetryKind.RATE_LIMIT, failures):
                    logger.error(f"[{self.request_id}] {method} {path} still rate limited after {failures} attempts")
                    raise RateLimitExceeded(
                        f"Rate limit exceeded for {method} {path}",
                        retry_after=usage.wait_hint
                    )
                delay = await policy.wait(RetryKind.RATE_LIMIT, failures - 1, usage.wait_hint)
                logger.warning(f"[{self.request_id}] Rate limited (429), retried after {delay:.2f}s")
                continue

            if status_code == 401:
                if not authenticate:
                    raise AuthError(f"Credential exchange rejected ({status_code})")
                auth_failures += 1
                if not policy.allows(RetryKind.AUTH, auth_failures):
                    await self.token_manager.mark_auth_failure(
                        connection, f"{method} {path} unauthorized after token refresh"
                    )
                    raise AuthError(f"{method} {path} unauthorized after token refresh", connection.id)
                logger.info(f"[{self.request_id}] 401 on {method} {path}, refreshing token")
                await self.token_manager.refresh(connection, op_class, stale_token=token)
                continue

            # Client/server error - don't retry
            error = ProviderError(status_code, data)
            logger.warning(
                f"[{self.request_id}] {method} {path} -> {status_code}: {error.message} "
                f"(payload={sanitize_payload(body) if isinstance(body, dict) else '...'})"
            )
            raise error

    async def exchange_setup_code(self, code: str, device_name: Optional[str] = None) -> TokenGrant:
        """
        One-time exchange of a setup/invitation code for a refresh credential.
        Only used while linking a new connection.
        """
        headers = {"code": code}
        if device_name:
            headers["deviceName"] = device_name
        data, _ = await self.call(
            self.settings.channel_setup_path,
            "GET",
            headers=headers,
            authenticate=False,
        )
        try:
            grant = TokenGrant.from_payload(data)
        except ValueError as e:
            raise AuthError(f"Setup exchange returned no usable token: {e}")
        if not grant.refresh_token:
            raise AuthError("Setup exchange returned no refresh credential")
        return grant
