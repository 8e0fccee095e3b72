"""Retry/backoff controller for provider calls.

Each attempt first takes a token from the provider's bucket, then runs the
call. Only rate-limit failures are retried, after
``min(retry_after, 2 ** attempt)`` seconds. Everything else propagates on the
first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from agentflow.core.metrics import RATE_LIMIT_RETRIES
from agentflow.engine.errors import RateLimitError, RateLimitTimeoutError
from agentflow.engine.signals import (
    DEFAULT_RETRY_AFTER,
    extract_rate_limit_info,
    format_rate_limit_message,
    is_rate_limit_error,
    should_retry,
)
from agentflow.engine.token_bucket import ProviderRateRegistry
from agentflow.engine.types import parse_model

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_TOKEN_TIMEOUT = 30.0  # seconds


def compute_backoff(attempt: int, retry_after: float = DEFAULT_RETRY_AFTER) -> float:
    """Exponential backoff capped by the provider's suggested wait."""
    return float(min(retry_after, 2**attempt))


class RetryController:
    """Runs a provider call under the rate-limit token and retry budget."""

    def __init__(
        self,
        registry: ProviderRateRegistry,
        max_retries: int = DEFAULT_MAX_RETRIES,
        token_timeout: float = DEFAULT_TOKEN_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.max_retries = max_retries
        self.token_timeout = token_timeout
        self._sleep = sleep

    async def run(
        self,
        model: str,
        call: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
    ) -> T:
        """Run ``call`` with up to ``max_retries`` retries on rate-limit errors.

        Raises:
            RateLimitTimeoutError: no bucket token within ``token_timeout``.
            RateLimitError: the provider kept rate limiting, or its quota will
                not reset in time for another attempt to help.
        """
        provider = parse_model(model)[0]
        budget = self.max_retries if max_retries is None else max_retries

        for attempt in range(budget + 1):
            if not await self.registry.wait_for_token(provider, timeout=self.token_timeout):
                raise RateLimitTimeoutError("Rate limit token timeout. Please try again later.")

            try:
                return await call()
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise

                descriptor = extract_rate_limit_info(e)
                retries_left = budget - attempt
                if not should_retry(descriptor, retries_left):
                    raise RateLimitError(
                        format_rate_limit_message(descriptor),
                        headers=getattr(e, "headers", None),
                        descriptor=descriptor,
                    ) from e

                retry_after = descriptor.retry_after if descriptor and descriptor.retry_after else DEFAULT_RETRY_AFTER
                delay = compute_backoff(attempt, retry_after)
                RATE_LIMIT_RETRIES.labels(provider=self.registry.provider_label(provider)).inc()
                logger.info(
                    "Rate limited by %s. Waiting %.1fs before retry %d/%d",
                    provider,
                    delay,
                    attempt + 1,
                    budget,
                    extra={"provider": provider},
                )
                await self._sleep(delay)

        # Loop always returns or raises
        raise RateLimitError(format_rate_limit_message(None))
