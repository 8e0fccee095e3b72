"""Response normalizer: unified usage, tool output and node output shapes.

Providers disagree on field names (``input_tokens`` vs ``prompt_tokens``,
content blocks vs plain strings). Everything downstream of the adapters sees
the shapes produced here.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from agentflow.engine.types import DispatchResult, OutputFormat, Usage

logger = logging.getLogger(__name__)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def normalize_usage(raw: Mapping[str, Any] | None) -> Usage:
    """Map Anthropic / OpenAI / Groq usage payloads onto ``Usage``."""
    if not raw:
        return Usage()
    input_tokens = _int(raw.get("input_tokens", raw.get("prompt_tokens")))
    output_tokens = _int(raw.get("output_tokens", raw.get("completion_tokens")))
    total_tokens = _int(raw.get("total_tokens")) or input_tokens + output_tokens
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)


def extract_tool_output(block: Mapping[str, Any]) -> Any:
    """Pull the useful value out of a tool result block.

    Error results become ``{"error": ...}``; text content lists collapse to
    their first text entry.
    """
    content = block.get("content", block.get("output"))
    if isinstance(content, list):
        texts = [item.get("text") for item in content if isinstance(item, Mapping) and item.get("text") is not None]
        content = texts[0] if texts else content
    if block.get("is_error") or block.get("isError") or block.get("error"):
        return {"error": content if content is not None else block.get("error")}
    return content


def parse_output(text: str, output_format: OutputFormat) -> Any:
    """Final node output: parsed JSON for json nodes, otherwise the text."""
    if output_format != OutputFormat.JSON:
        return text
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        logger.warning("Agent output is not valid JSON, returning raw text")
        return text


def normalize_result(result: DispatchResult) -> DispatchResult:
    """Post-process a dispatch result. Idempotent."""
    if result.text is None:
        result.text = ""
    usage = result.usage
    if usage.total_tokens == 0 and (usage.input_tokens or usage.output_tokens):
        usage.total_tokens = usage.input_tokens + usage.output_tokens
    return result
