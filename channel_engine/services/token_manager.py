"""
Token Manager

Owns access tokens for channel connections:
- In-memory cache keyed by (connection id, operation class)
- Tokens expiring within the safety margin are refreshed before use
- Single-flight refresh: one asyncio.Lock per cache key, waiters re-check
  the cache instead of calling the token endpoint again
- Refreshed tokens are persisted (ConnectionToken) before they are cached
- Provider rejection of the refresh credential marks the connection `error`
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import asyncio
import httpx
from sqlalchemy.orm import Session

from ..config import settings as default_settings
from ..database import SessionLocal
from ..models.channel_connection import (
    ChannelConnection,
    ConnectionToken,
    ConnectionStatus,
    OperationClass
)
from ..utils.logging_config import get_logger
from ..utils.security import CredentialCipher, CredentialError
from .errors import AuthError, TransportError
from .provider_payloads import TokenGrant

logger = get_logger(__name__)

CacheKey = Tuple[str, str]


@dataclass
class CachedToken:
    access_token: str
    expires_at: datetime

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return self.expires_at - margin > now


class TokenCache:
    """Access tokens plus one refresh lock per key"""

    def __init__(self):
        self._tokens: Dict[CacheKey, CachedToken] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    def get(self, key: CacheKey) -> Optional[CachedToken]:
        return self._tokens.get(key)

    def put(self, key: CacheKey, token: CachedToken) -> None:
        self._tokens[key] = token

    def drop_connection(self, connection_id: str) -> None:
        for key in [k for k in self._tokens if k[0] == connection_id]:
            del self._tokens[key]

    def lock(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


def _class_value(operation_class) -> str:
    if isinstance(operation_class, OperationClass):
        return operation_class.value
    return str(operation_class)


class TokenManager:
    """
    Hands out access tokens that are valid for at least the safety margin.

    The cache is owned by the instance; share one TokenManager per process
    so the single-flight guard covers every caller.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session_factory: Callable[[], Session] = SessionLocal,
        cipher: Optional[CredentialCipher] = None,
        settings=None,
        cache: Optional[TokenCache] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.http_client = http_client
        self.session_factory = session_factory
        self.cipher = cipher or CredentialCipher()
        self.settings = settings or default_settings
        self.cache = cache or TokenCache()
        self.now = now
        self.margin = timedelta(seconds=self.settings.token_safety_margin_seconds)
        self.refresh_count = 0

    @staticmethod
    def _key(connection: ChannelConnection, operation_class) -> CacheKey:
        return (connection.id, _class_value(operation_class))

    def _fresh(self, token: Optional[CachedToken]) -> bool:
        return token is not None and token.is_fresh(self.now(), self.margin)

    async def get_token(self, connection: ChannelConnection, operation_class) -> str:
        """Return a token valid beyond the safety margin, refreshing if needed"""
        if connection.status == ConnectionStatus.DISABLED.value:
            raise AuthError(f"Connection {connection.id} is disabled", connection.id)

        key = self._key(connection, operation_class)
        cached = self.cache.get(key)
        if self._fresh(cached):
            return cached.access_token

        async with self.cache.lock(key):
            # Another caller may have refreshed while we waited
            cached = self.cache.get(key)
            if self._fresh(cached):
                return cached.access_token

            persisted = self._load_persisted(key)
            if self._fresh(persisted):
                self.cache.put(key, persisted)
                return persisted.access_token

            token = await self._refresh_locked(connection, key)
            return token.access_token

    async def refresh(
        self,
        connection: ChannelConnection,
        operation_class,
        stale_token: Optional[str] = None
    ) -> None:
        """
        Force a refresh for (connection, operation class).

        When `stale_token` is given and the cache already holds a different
        fresh token, a concurrent caller has refreshed and nothing is done.
        """
        key = self._key(connection, operation_class)
        async with self.cache.lock(key):
            cached = self.cache.get(key)
            if stale_token is not None and self._fresh(cached) and cached.access_token != stale_token:
                return
            await self._refresh_locked(connection, key)

    def _load_persisted(self, key: CacheKey) -> Optional[CachedToken]:
        db = self.session_factory()
        try:
            row = db.query(ConnectionToken).filter(
                ConnectionToken.connection_id == key[0],
                ConnectionToken.operation_class == key[1]
            ).first()
            if row is None:
                return None
            return CachedToken(row.access_token, row.expires_at)
        finally:
            db.close()

    async def _refresh_locked(self, connection: ChannelConnection, key: CacheKey) -> CachedToken:
        """Call the token endpoint. Caller holds the key's lock."""
        db = self.session_factory()
        try:
            row = db.get(ChannelConnection, connection.id)
            if row is None:
                raise AuthError(f"Connection {connection.id} not found", connection.id)
            if row.status == ConnectionStatus.DISABLED.value:
                raise AuthError(f"Connection {connection.id} is disabled", connection.id)

            try:
                refresh_credential = self.cipher.decrypt(row.refresh_credential_encrypted)
            except CredentialError as e:
                self._reject(db, row, key, str(e))

            url = f"{self.settings.channel_base_url}{self.settings.channel_token_path}"
            try:
                response = await self.http_client.get(url, headers={"refreshToken": refresh_credential})
            except httpx.TransportError as e:
                row.error_count = (row.error_count or 0) + 1
                row.last_error = f"Token refresh failed: {e}"[:1000]
                db.commit()
                logger.warning(f"[{connection.id}] Token refresh transport failure: {e}")
                raise TransportError(f"Token refresh failed: {e}")

            status = response.status_code
            if status == 429 or status >= 500:
                # Transient on the provider side, the credential is not at fault
                row.last_error = f"Token endpoint returned {status}"
                db.commit()
                raise TransportError(f"Token endpoint returned {status}")

            if not 200 <= status < 300:
                self._reject(db, row, key, f"Refresh credential rejected ({status})")

            try:
                grant = TokenGrant.from_payload(response.json())
            except ValueError as e:
                self._reject(db, row, key, f"Unreadable token response: {e}")

            now = self.now()
            token = CachedToken(grant.access_token, grant.expires_at(now))
            if not token.is_fresh(now, self.margin):
                logger.warning(
                    f"[{connection.id}] Provider issued a token valid for only {grant.expires_in}s"
                )

            self._persist(db, row, key[1], token, grant)
            db.commit()

            self.cache.put(key, token)
            self.refresh_count += 1
            logger.token_refreshed(connection.id, key[1], grant.expires_in)
            return token
        finally:
            db.close()

    def _persist(self, db: Session, row: ChannelConnection, operation_class: str, token: CachedToken, grant: TokenGrant):
        stored = db.query(ConnectionToken).filter(
            ConnectionToken.connection_id == row.id,
            ConnectionToken.operation_class == operation_class
        ).first()
        if stored is None:
            stored = ConnectionToken(connection_id=row.id, operation_class=operation_class)
            db.add(stored)
        stored.access_token = token.access_token
        stored.expires_at = token.expires_at

        # Some providers rotate the refresh credential on every refresh
        if grant.refresh_token:
            row.refresh_credential_encrypted = self.cipher.encrypt(grant.refresh_token)
        if grant.scopes:
            row.scopes = grant.scopes
        row.last_error = None
        row.error_count = 0

    def _reject(self, db: Session, row: ChannelConnection, key: CacheKey, message: str):
        """Unrecoverable auth failure: connection goes to `error`"""
        row.status = ConnectionStatus.ERROR.value
        row.last_error = message[:1000]
        row.error_count = (row.error_count or 0) + 1
        db.commit()
        self.cache.drop_connection(row.id)
        logger.error(f"[{row.id}] {message}; connection marked error")
        raise AuthError(message, row.id)

    def seed(self, db: Session, connection: ChannelConnection, operation_class, access_token: str, expires_at: datetime) -> None:
        """
        Store a token obtained outside the refresh path (setup-code exchange).
        Persists on the caller's session; the caller commits.
        """
        key = self._key(connection, operation_class)
        stored = db.query(ConnectionToken).filter(
            ConnectionToken.connection_id == key[0],
            ConnectionToken.operation_class == key[1]
        ).first()
        if stored is None:
            stored = ConnectionToken(connection_id=key[0], operation_class=key[1])
            db.add(stored)
        stored.access_token = access_token
        stored.expires_at = expires_at
        self.cache.put(key, CachedToken(access_token, expires_at))

    async def mark_auth_failure(self, connection: ChannelConnection, message: str) -> None:
        """Record an auth failure the client could not recover from"""
        db = self.session_factory()
        try:
            row = db.get(ChannelConnection, connection.id)
            if row is not None:
                row.status = ConnectionStatus.ERROR.value
                row.last_error = message[:1000]
                row.error_count = (row.error_count or 0) + 1
                db.commit()
        finally:
            db.close()
        self.cache.drop_connection(connection.id)
        logger.error(f"[{connection.id}] {message}; connection marked error")

    def invalidate(self, connection_id: str) -> None:
        """Forget every cached token of a connection (unlink / relink)"""
        self.cache.drop_connection(connection_id)
