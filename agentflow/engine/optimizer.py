"""Deterministic prompt shrinking before any provider call.

Token counts are estimated at four characters per token. Every function here
is pure: the same input always produces the same output, and
``optimize_prompt`` output always fits its budget, so applying it twice
changes nothing.
"""

from __future__ import annotations

import logging
import math
import re

from agentflow.engine.types import ChatMessage

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_CONTEXT_WINDOW = 200_000
CONTEXT_WINDOW_USABLE_RATIO = 0.8
LARGE_CONTENT_CHARS = 20_000  # Scraped pages and similar bulk input
TRUNCATION_MARKER = "\n\n... (content truncated) ...\n\n"

# Request assembly checkpoints (tokens)
INSTRUCTIONS_MAX_TOKENS = 8_000
CONTEXT_WINDOW_GUARD = 15_000
CONTEXT_MAX_TOKENS = 5_000
CIRCUIT_BREAKER_TOKENS = 25_000
CIRCUIT_BREAKER_MAX_TOKENS = 3_000
RECENT_HISTORY_KEEP = 3

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

# (pattern, maximum line length) pairs for lines worth keeping from bulk content
_ESSENTIAL_LINE_PATTERNS: tuple[tuple[re.Pattern[str], int], ...] = (
    # Prices
    (re.compile(r"[$€£¥]\s?\d"), 50),
    # Ratings
    (re.compile(r"\b(stars?|rating|rated)\b", re.IGNORECASE), 50),
    # Review and purchase counts
    (re.compile(r"\b(reviews?|bought|customers)\b", re.IGNORECASE), 50),
    # Short product facts
    (re.compile(r"\b(DPI|battery|rechargeable|wireless|bluetooth|warranty|weight|dimensions)\b", re.IGNORECASE), 100),
)


def estimate_token_count(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def is_prompt_too_long(text: str, context_window: int = DEFAULT_CONTEXT_WINDOW) -> bool:
    """True when ``text`` would use more than 80% of ``context_window``."""
    return estimate_token_count(text) > context_window * CONTEXT_WINDOW_USABLE_RATIO


def _fits(text: str, max_tokens: int) -> bool:
    return estimate_token_count(text) <= max_tokens


def _extract_essential_lines(content: str) -> list[str]:
    essential = []
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        for pattern, max_len in _ESSENTIAL_LINE_PATTERNS:
            if len(trimmed) < max_len and pattern.search(trimmed):
                essential.append(trimmed)
                break
    return essential


def _optimize_large_content(content: str, max_tokens: int) -> str:
    max_chars = max_tokens * CHARS_PER_TOKEN

    essential = _extract_essential_lines(content)
    if essential:
        optimized = "\n".join(essential)
        if len(optimized) <= max_chars:
            logger.debug("Extracted %d essential lines (%d chars)", len(essential), len(optimized))
            return optimized

    half = (max_chars - len(TRUNCATION_MARKER)) // 2
    if half <= 0:
        return content[:max_chars]
    result = f"{content[:half]}{TRUNCATION_MARKER}{content[-half:]}"
    logger.debug("Head/tail truncation: %d -> %d chars", len(content), len(result))
    return result


def _truncate_words(text: str, max_chars: int) -> str:
    words = text.split(" ")
    target = math.floor((max_chars / len(text)) * len(words))
    while target > 0 and len(" ".join(words[:target])) + 3 > max_chars:
        target -= 1
    return " ".join(words[:target]) + "..."


def _optimize_sentences(text: str, max_tokens: int) -> str:
    max_chars = max_tokens * CHARS_PER_TOKEN
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]
    if not sentences:
        return text[:max_chars]

    # First sentence carries the instruction, the last three the conclusion
    keep = sorted({0, *range(max(0, len(sentences) - 3), len(sentences))})
    optimized = ". ".join(sentences[i] for i in keep)

    if not _fits(optimized, max_tokens):
        optimized = _truncate_words(optimized, max_chars)
    return optimized


def optimize_prompt(text: str, max_tokens: int = INSTRUCTIONS_MAX_TOKENS) -> str:
    """Shrink ``text`` to at most ``max_tokens`` estimated tokens.

    Text that already fits is returned unchanged. Large content (over 20k
    characters) keeps only essential lines, or the head and tail around a
    truncation marker. Anything else keeps the first and last three
    sentences, cut down by words if still too long.
    """
    if _fits(text, max_tokens):
        return text

    max_chars = max(0, max_tokens * CHARS_PER_TOKEN)
    if len(text) > LARGE_CONTENT_CHARS:
        optimized = _optimize_large_content(text, max_tokens)
    else:
        optimized = _optimize_sentences(text, max_tokens)

    if not _fits(optimized, max_tokens):
        optimized = optimized[:max_chars]
    return optimized


def _context_text(messages: list[ChatMessage]) -> str:
    return "\n".join(m.content for m in messages)


def compact_messages(
    instructions: str,
    history: list[ChatMessage] | None = None,
    include_history: bool = False,
) -> list[ChatMessage]:
    """Assemble the outgoing transcript, shrinking it where needed.

    1. Instructions too long for a full context window are capped at 8k tokens.
    2. A context too long for a 15k window caps the user message at 5k tokens
       and keeps only the last three history entries.
    3. A context estimate over 25k tokens caps the user message at 3k tokens.

    Both context checks look at the transcript as assembled after step 1, and
    the smallest triggered cap wins.
    """
    prompt = instructions
    if is_prompt_too_long(prompt):
        logger.info("Instructions are very long, optimizing to %d tokens", INSTRUCTIONS_MAX_TOKENS)
        prompt = optimize_prompt(prompt, INSTRUCTIONS_MAX_TOKENS)

    prior = list(history or []) if include_history else []
    messages = [*prior, ChatMessage(role="user", content=prompt)]

    context = _context_text(messages)
    estimated = estimate_token_count(context)

    cap: int | None = None
    if is_prompt_too_long(context, CONTEXT_WINDOW_GUARD):
        logger.info("Message context is very long (~%d tokens), optimizing", estimated)
        cap = CONTEXT_MAX_TOKENS
        prior = prior[-RECENT_HISTORY_KEEP:]

    if estimated > CIRCUIT_BREAKER_TOKENS:
        logger.warning(
            "Context exceeds %d tokens (~%d), forcing aggressive optimization",
            CIRCUIT_BREAKER_TOKENS,
            estimated,
        )
        cap = CIRCUIT_BREAKER_MAX_TOKENS

    if cap is None:
        return messages

    messages = [*prior, ChatMessage(role="user", content=optimize_prompt(prompt, cap))]
    logger.info("Context after optimization: ~%d tokens", estimate_token_count(_context_text(messages)))
    return messages
