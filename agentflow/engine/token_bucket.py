"""Per-provider token buckets for outbound LLM traffic.

Each provider gets a bucket of ``capacity`` tokens refilled continuously at
``refill_rate_per_second``. Refill is computed lazily from the elapsed
monotonic time whenever the bucket is touched; there is no background timer.

Refill and consume are a single synchronous read-modify-write with no
``await`` in between, so concurrent asyncio tasks sharing a bucket never need
a lock.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable

from agentflow.core.metrics import TOKEN_WAIT_SECONDS, TOKEN_WAIT_TIMEOUTS
from agentflow.engine.types import DEFAULT_BUCKET_CONFIGS, BucketConfig

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05  # seconds between try_consume() attempts while waiting

# Unconfigured providers share one metric series
OTHER_PROVIDER_LABEL = "other"

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class TokenBucket:
    """Continuous-refill token bucket.

    Usage:
        bucket = TokenBucket(refill_rate_per_second=3.0, capacity=5)

        if not await bucket.wait_for_token(timeout=30.0):
            raise RateLimitTimeoutError(...)
    """

    def __init__(
        self,
        refill_rate_per_second: float,
        capacity: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.refill_rate_per_second = float(refill_rate_per_second)
        self.capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self.tokens = self.capacity  # Starts full
        self.last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_second)
        self.last_refill = now

    def try_consume(self) -> bool:
        """Take one token if available. Never blocks, never goes negative."""
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    async def wait_for_token(self, timeout: float) -> bool:
        """Poll until a token is taken or ``timeout`` seconds pass.

        Returns True if a token was consumed, False on timeout. A timeout of
        zero still makes exactly one attempt.
        """
        deadline = self._clock() + timeout

        while True:
            if self.try_consume():
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            await self._sleep(min(POLL_INTERVAL, remaining))

    def time_until_next_token(self) -> float:
        """Seconds until at least one token is available (0 if one is now)."""
        self._refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate_per_second

    def token_count(self) -> float:
        self._refill()
        return self.tokens

    def stats(self) -> dict:
        return {
            "available_tokens": math.floor(self.token_count() * 100) / 100,
            "capacity": self.capacity,
            "refill_rate_per_second": self.refill_rate_per_second,
            "seconds_until_next_token": round(self.time_until_next_token(), 3),
        }


class ProviderRateRegistry:
    """One token bucket per provider, shared by every execution of an engine.

    Unknown providers share the most conservative configured bucket instead
    of getting an unthrottled one.
    """

    def __init__(
        self,
        configs: dict[str, BucketConfig] | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        configs = configs or DEFAULT_BUCKET_CONFIGS
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {
            provider: TokenBucket(config.refill_rate_per_second, config.capacity, clock=clock, sleep=sleep)
            for provider, config in configs.items()
        }
        fallback_provider = min(
            configs,
            key=lambda p: (configs[p].refill_rate_per_second, configs[p].capacity),
        )
        self._fallback_provider = fallback_provider
        self._fallback = self._buckets[fallback_provider]

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> ProviderRateRegistry:
        """Build a registry from the ``*_requests_per_second`` / ``*_burst`` settings."""
        if settings is None:
            from agentflow.core.config import settings

        configs = {
            provider: BucketConfig(
                provider=provider,
                refill_rate_per_second=getattr(settings, f"{provider}_requests_per_second"),
                capacity=getattr(settings, f"{provider}_burst"),
            )
            for provider in DEFAULT_BUCKET_CONFIGS
        }
        return cls(configs, **kwargs)

    @property
    def providers(self) -> list[str]:
        return list(self._buckets)

    def provider_label(self, provider: str) -> str:
        """Metric label for ``provider``: its own name if configured, else ``other``."""
        provider = provider.lower()
        return provider if provider in self._buckets else OTHER_PROVIDER_LABEL

    def get_bucket(self, provider: str) -> TokenBucket:
        """Bucket for ``provider``, or the shared fallback bucket."""
        return self._buckets.get(provider.lower(), self._fallback)

    async def wait_for_token(self, provider: str, timeout: float = 30.0) -> bool:
        """Wait up to ``timeout`` seconds for a token for ``provider``."""
        bucket = self.get_bucket(provider)
        start = self._clock()
        acquired = await bucket.wait_for_token(timeout)
        waited = max(0.0, self._clock() - start)
        label = self.provider_label(provider)

        TOKEN_WAIT_SECONDS.labels(provider=label).observe(waited)
        if not acquired:
            TOKEN_WAIT_TIMEOUTS.labels(provider=label).inc()
            logger.warning("No %s rate limit token within %.1fs", provider, timeout, extra={"provider": provider})
        elif waited >= 1.0:
            logger.info("Waited %.2fs for a %s rate limit token", waited, provider, extra={"provider": provider})
        return acquired

    def get_stats(self, provider: str) -> dict:
        """Current bucket state for a provider."""
        stats = self.get_bucket(provider).stats()
        stats["provider"] = provider if provider in self._buckets else self._fallback_provider
        return stats

    def get_all_stats(self) -> list[dict]:
        """Current state of every configured bucket."""
        return [self.get_stats(p) for p in self._buckets]
