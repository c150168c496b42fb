"""
Retry / Backoff Policy

One policy object shared by every outbound call. Failures are classified
into three kinds:
- AUTH: one forced token refresh and one retry, never more
- RATE_LIMIT: wait the provider's stated reset window, else exponential backoff
- TRANSPORT: exponential backoff (base * 2^attempt, capped) with jitter

Rate-limit and transport failures draw from the same attempt ceiling.
"""

import asyncio
import enum
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional


class RetryKind(str, enum.Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSPORT = "transport"


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    auth_retries: int = 1
    # Proactive quota backoff
    low_quota_floor: int = 50
    max_quota_wait: float = 1800.0
    rng: Callable[[], float] = field(default=random.random, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RetryPolicy":
        values = dict(
            max_attempts=settings.channel_max_attempts,
            base_delay=settings.channel_backoff_base_seconds,
            max_delay=settings.channel_backoff_max_seconds,
            jitter=settings.channel_backoff_jitter_seconds,
            low_quota_floor=settings.channel_low_quota_floor,
            max_quota_wait=settings.channel_max_quota_wait_seconds,
        )
        values.update(overrides)
        return cls(**values)

    def allows(self, kind: RetryKind, failures: int) -> bool:
        """
        Whether another attempt is allowed after `failures` failures of `kind`.
        """
        if kind == RetryKind.AUTH:
            return failures <= self.auth_retries
        return failures < self.max_attempts

    def delay(self, kind: RetryKind, attempt: int, hint: Optional[float] = None) -> float:
        """
        Seconds to wait before retry number `attempt` (0-based).

        A rate-limit hint (reset window / Retry-After) is honored in full and
        only jitter is added on top, so the next attempt never comes earlier
        than the provider asked.
        """
        if kind == RetryKind.AUTH:
            return 0.0

        jitter = self.rng() * self.jitter
        if kind == RetryKind.RATE_LIMIT and hint is not None and hint >= 0:
            return hint + jitter

        return min(self.base_delay * (2 ** attempt), self.max_delay) + jitter

    async def wait(self, kind: RetryKind, attempt: int, hint: Optional[float] = None) -> float:
        seconds = self.delay(kind, attempt, hint)
        if seconds > 0:
            await self.sleep(seconds)
        return seconds

    def quota_delay(self, remaining: Optional[int], resets_in: Optional[float]) -> float:
        """
        Progressive pause when the current window is nearly spent.

        Below 10 credits wait the whole window, below 25 half of it,
        otherwise (still under the floor) a tenth of it, capped at 5 minutes.
        """
        if remaining is None or resets_in is None or remaining >= self.low_quota_floor:
            return 0.0
        if remaining < 10:
            return min(resets_in, self.max_quota_wait)
        if remaining < 25:
            return min(resets_in * 0.5, self.max_quota_wait / 2)
        return min(resets_in * 0.1, 300.0)
