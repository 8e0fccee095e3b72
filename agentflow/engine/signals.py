"""Rate-limit signal extraction from provider errors.

Reads the quota headers a provider attaches to a 429 response and turns them
into a ``RateLimitDescriptor`` the retry controller can reason about.

Anthropic reports ``anthropic-ratelimit-*`` headers; OpenAI and Groq report
``x-ratelimit-*`` headers, used only when the Anthropic ones are absent.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import httpx

from agentflow.engine.errors import RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60  # seconds
DEFAULT_INPUT_TOKENS_LIMIT = 30_000
DEFAULT_OUTPUT_TOKENS_LIMIT = 8_000
DEFAULT_TOTAL_TOKENS_LIMIT = 38_000
DEFAULT_REQUESTS_LIMIT = 50

# Beyond this horizon a retry cannot succeed before the budget runs out
MAX_USEFUL_RESET_WAIT = timedelta(minutes=5)

# "6m0s", "1.5s", "120ms", "1h2m3.5s" (OpenAI / Groq reset headers)
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "too many requests")


@dataclass(frozen=True)
class RateLimitDescriptor:
    """Quota snapshot reported with a rate-limit rejection."""

    retry_after: int = DEFAULT_RETRY_AFTER
    reset_time: str = ""
    remaining_tokens: int = 0
    limit_tokens: int = DEFAULT_INPUT_TOKENS_LIMIT
    output_tokens_remaining: int = 0
    output_tokens_limit: int = DEFAULT_OUTPUT_TOKENS_LIMIT
    requests_remaining: int = 0
    requests_limit: int = DEFAULT_REQUESTS_LIMIT
    total_tokens_remaining: int = 0
    total_tokens_limit: int = DEFAULT_TOTAL_TOKENS_LIMIT

    def reset_at(self, now: datetime | None = None) -> datetime | None:
        """Parse ``reset_time`` into an aware datetime, or None if unparseable."""
        return parse_reset_time(self.reset_time, now=now)

    def to_dict(self) -> dict:
        return {
            "retry_after": self.retry_after,
            "reset_time": self.reset_time,
            "remaining_tokens": self.remaining_tokens,
            "limit_tokens": self.limit_tokens,
            "output_tokens_remaining": self.output_tokens_remaining,
            "output_tokens_limit": self.output_tokens_limit,
            "requests_remaining": self.requests_remaining,
            "requests_limit": self.requests_limit,
            "total_tokens_remaining": self.total_tokens_remaining,
            "total_tokens_limit": self.total_tokens_limit,
        }


def parse_reset_time(value: str, now: datetime | None = None) -> datetime | None:
    """Parse an RFC 3339 timestamp or a relative duration like ``6m0s``."""
    if not value:
        return None
    value = value.strip()

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    except ValueError:
        pass

    matches = _DURATION_RE.findall(value)
    if matches and "".join(f"{num}{unit}" for num, unit in matches) == value:
        seconds = sum(float(num) * _DURATION_UNITS[unit] for num, unit in matches)
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=seconds)

    logger.debug("Unrecognized rate limit reset value: %r", value)
    return None


def _int_header(headers: Mapping[str, str], name: str, default: int) -> int:
    raw = headers.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return default


def _error_headers(error: Any) -> Mapping[str, str] | None:
    headers = getattr(error, "headers", None)
    if headers:
        return headers
    response = getattr(error, "response", None)
    if isinstance(response, httpx.Response) and response.headers:
        return response.headers
    return None


def extract_rate_limit_info(error: Any) -> RateLimitDescriptor | None:
    """Build a descriptor from the headers attached to ``error``.

    Returns None when the error carries no response metadata at all.
    """
    raw_headers = _error_headers(error)
    if not raw_headers:
        return None
    # Header names are case-insensitive
    headers = {str(k).lower(): str(v) for k, v in raw_headers.items()}

    retry_after = _int_header(headers, "retry-after", DEFAULT_RETRY_AFTER)

    if any(name.startswith("anthropic-ratelimit-") for name in headers):
        return RateLimitDescriptor(
            retry_after=retry_after,
            reset_time=headers.get("anthropic-ratelimit-input-tokens-reset", ""),
            remaining_tokens=_int_header(headers, "anthropic-ratelimit-input-tokens-remaining", 0),
            limit_tokens=_int_header(headers, "anthropic-ratelimit-input-tokens-limit", DEFAULT_INPUT_TOKENS_LIMIT),
            output_tokens_remaining=_int_header(headers, "anthropic-ratelimit-output-tokens-remaining", 0),
            output_tokens_limit=_int_header(
                headers, "anthropic-ratelimit-output-tokens-limit", DEFAULT_OUTPUT_TOKENS_LIMIT
            ),
            requests_remaining=_int_header(headers, "anthropic-ratelimit-requests-remaining", 0),
            requests_limit=_int_header(headers, "anthropic-ratelimit-requests-limit", DEFAULT_REQUESTS_LIMIT),
            total_tokens_remaining=_int_header(headers, "anthropic-ratelimit-tokens-remaining", 0),
            total_tokens_limit=_int_header(headers, "anthropic-ratelimit-tokens-limit", DEFAULT_TOTAL_TOKENS_LIMIT),
        )

    # OpenAI / Groq report a single token pool
    tokens_remaining = _int_header(headers, "x-ratelimit-remaining-tokens", 0)
    tokens_limit = _int_header(headers, "x-ratelimit-limit-tokens", DEFAULT_INPUT_TOKENS_LIMIT)
    return RateLimitDescriptor(
        retry_after=retry_after,
        reset_time=headers.get("x-ratelimit-reset-tokens", ""),
        remaining_tokens=tokens_remaining,
        limit_tokens=tokens_limit,
        requests_remaining=_int_header(headers, "x-ratelimit-remaining-requests", 0),
        requests_limit=_int_header(headers, "x-ratelimit-limit-requests", DEFAULT_REQUESTS_LIMIT),
        total_tokens_remaining=tokens_remaining,
        total_tokens_limit=_int_header(headers, "x-ratelimit-limit-tokens", DEFAULT_TOTAL_TOKENS_LIMIT),
    )


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for errors that signal a provider rate limit."""
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def should_retry(
    descriptor: RateLimitDescriptor | None,
    retries_left: int,
    now: datetime | None = None,
) -> bool:
    """Decide whether another attempt can possibly succeed."""
    if retries_left <= 0:
        return False
    if descriptor is None:
        return True

    if descriptor.remaining_tokens == 0:
        reset_at = descriptor.reset_at(now=now)
        if reset_at is not None:
            now = now or datetime.now(timezone.utc)
            if reset_at - now > MAX_USEFUL_RESET_WAIT:
                return False

    return True


def format_rate_limit_message(
    descriptor: RateLimitDescriptor | None,
    now: datetime | None = None,
) -> str:
    """Human-readable explanation of a rate-limit rejection."""
    if descriptor is None:
        return "Rate limited. Please wait a moment and try again."

    if descriptor.remaining_tokens == 0:
        now = now or datetime.now(timezone.utc)
        reset_at = descriptor.reset_at(now=now)
        if reset_at is not None:
            minutes = max(0, math.ceil((reset_at - now).total_seconds() / 60))
            return (
                f"Rate limit exceeded. You've used all {descriptor.limit_tokens:,} tokens. "
                f"Please wait {minutes} minutes until the limit resets at {reset_at.strftime('%H:%M:%S')}."
            )
        return (
            f"Rate limit exceeded. You've used all {descriptor.limit_tokens:,} tokens. "
            f"Please wait {descriptor.retry_after} seconds before retrying."
        )

    return (
        f"Rate limited. {descriptor.remaining_tokens:,} tokens remaining. "
        f"Please wait {descriptor.retry_after} seconds before retrying."
    )
