"""
Channel Engine

Process-wide holder for the components that must be shared: one HTTP
connection pool, one token cache (single-flight refresh only works when
every caller goes through the same TokenManager) and one usage recorder.
"""

import logging
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import settings as default_settings
from ..database import SessionLocal
from ..utils.security import CredentialCipher
from .channel_client import ChannelClient, UsageRecorder
from .retry_policy import RetryPolicy
from .token_manager import TokenManager

logger = logging.getLogger(__name__)


class ChannelEngine:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        cipher: Optional[CredentialCipher] = None,
        settings=None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.settings = settings or default_settings
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.channel_timeout_seconds)
        self.cipher = cipher or CredentialCipher()
        self.token_manager = TokenManager(
            self.http_client,
            session_factory=session_factory,
            cipher=self.cipher,
            settings=self.settings,
        )
        self.usage_recorder = UsageRecorder(session_factory)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

    def client(self, request_id: Optional[str] = None) -> ChannelClient:
        """Factory for a request-scoped client over the shared components"""
        return ChannelClient(
            self.token_manager,
            http_client=self.http_client,
            usage_recorder=self.usage_recorder,
            retry_policy=self.retry_policy,
            settings=self.settings,
            request_id=request_id,
        )

    async def aclose(self) -> None:
        await self.usage_recorder.drain()
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.info("Channel engine closed")
