"""Tests for the prompt optimizer."""

from __future__ import annotations

import pytest

from agentflow.engine.optimizer import (
    TRUNCATION_MARKER,
    compact_messages,
    estimate_token_count,
    is_prompt_too_long,
    optimize_prompt,
)
from agentflow.engine.types import ChatMessage

NOISE_LINE = "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor"


def _scraped_page() -> str:
    lines = []
    for i in range(400):
        lines.append(NOISE_LINE)
        if i == 100:
            lines.append("Price: $19.99")
        if i == 200:
            lines.append("4.5 out of 5 stars")
        if i == 300:
            lines.append("Wireless mouse, 2400 DPI, rechargeable battery")
    return "\n".join(lines)


def _long_sentences(count: int = 60) -> str:
    body = " ".join(f"Filler sentence number {i} with extra padding words." for i in range(count))
    return f"Do the task. {body} Final A. Final B. Final C."


# ==========================================================================
# Test: estimates
# ==========================================================================


class TestEstimates:
    @pytest.mark.parametrize("text,expected", [("", 0), ("abcd", 1), ("abcde", 2), ("a" * 400, 100)])
    def test_estimate_token_count(self, text, expected):
        assert estimate_token_count(text) == expected

    def test_is_prompt_too_long_uses_80_percent(self):
        assert is_prompt_too_long("a" * 320, context_window=100) is False
        assert is_prompt_too_long("a" * 324, context_window=100) is True

    def test_default_window(self):
        assert is_prompt_too_long("short prompt") is False


# ==========================================================================
# Test: optimize_prompt
# ==========================================================================


class TestOptimizePrompt:
    def test_fitting_text_unchanged(self):
        text = "Summarize the following article."
        assert optimize_prompt(text, 8000) == text

    def test_keeps_first_and_last_sentences(self):
        text = _long_sentences()
        result = optimize_prompt(text, max_tokens=30)

        assert result.startswith("Do the task")
        assert "Final C" in result
        assert "Filler" not in result
        assert estimate_token_count(result) <= 30

    def test_word_truncation(self):
        sentence = " ".join(["word"] * 60)
        text = f"{sentence}. {sentence}. {sentence}"
        result = optimize_prompt(text, max_tokens=20)

        assert result.endswith("...")
        assert len(result) <= 80
        assert result.startswith("word word")

    def test_large_content_keeps_essential_lines(self):
        page = _scraped_page()
        assert len(page) > 20000

        result = optimize_prompt(page, max_tokens=1000)
        assert result == "Price: $19.99\n4.5 out of 5 stars\nWireless mouse, 2400 DPI, rechargeable battery"

    def test_large_content_head_tail_fallback(self):
        text = "a" * 15000 + "b" * 15000
        result = optimize_prompt(text, max_tokens=1000)

        assert TRUNCATION_MARKER in result
        assert result.startswith("a")
        assert result.endswith("b")
        assert len(result) <= 4000

    @pytest.mark.parametrize("max_tokens", [10, 30, 500, 1000, 3000])
    @pytest.mark.parametrize("builder", [_scraped_page, _long_sentences, lambda: "x" * 50000])
    def test_idempotent_and_shrinking(self, builder, max_tokens):
        text = builder()
        once = optimize_prompt(text, max_tokens)

        assert optimize_prompt(once, max_tokens) == once
        assert estimate_token_count(once) <= max_tokens
        if estimate_token_count(text) > max_tokens:
            assert estimate_token_count(once) <= estimate_token_count(text)
        else:
            assert once == text


# ==========================================================================
# Test: compact_messages
# ==========================================================================


class TestCompactMessages:
    def test_small_context_with_history(self):
        history = [ChatMessage("user", "hi"), ChatMessage("assistant", "hello")]
        messages = compact_messages("Next step", history, include_history=True)

        assert messages == [*history, ChatMessage("user", "Next step")]

    def test_history_excluded(self):
        history = [ChatMessage("user", "hi")]
        messages = compact_messages("Next step", history, include_history=False)

        assert messages == [ChatMessage("user", "Next step")]

    def test_long_context_trims_history_and_user_message(self):
        history = [ChatMessage("user" if i % 2 else "assistant", f"{i}" * 2000) for i in range(10)]
        instructions = _scraped_page()
        messages = compact_messages(instructions, history, include_history=True)

        assert messages[:-1] == history[-3:]
        assert messages[-1].role == "user"
        assert estimate_token_count(messages[-1].content) <= 5000

    def test_circuit_breaker(self):
        instructions = "z" * 120_000  # ~30k tokens
        messages = compact_messages(instructions)

        assert len(messages) == 1
        assert estimate_token_count(messages[0].content) <= 3000

    def test_oversized_instructions(self):
        instructions = "y" * 700_000  # over 80% of a 200k window
        messages = compact_messages(instructions)

        assert len(messages) == 1
        assert estimate_token_count(messages[0].content) <= 8000

    def test_input_history_not_mutated(self):
        history = [ChatMessage("user", "q" * 20000) for _ in range(5)]
        snapshot = list(history)
        compact_messages("w" * 40000, history, include_history=True)

        assert history == snapshot
