"""Provider-specific adapters: protocol-level handling for each LLM vendor.

Each adapter translates a transcript into the vendor's HTTP protocol, sends
it with ``httpx`` and returns a ``DispatchResult`` with normalized fields.

Provider-specific behaviors:
  - Anthropic: Messages API; system messages move to the ``system`` param;
    server-managed tools through the MCP connector beta (``mcp_servers``)
  - OpenAI: Chat Completions; client-managed tools through function calling
  - Groq: OpenAI-compatible chat; server-managed tools through the Responses
    API (``{"type": "mcp"}`` tools)

Error mapping is shared: 429 (or a rate-limit marker in an error body) raises
``RateLimitError`` with the response headers, 401/403 raise
``ConfigurationError``, anything else surfaces as ``httpx.HTTPStatusError``.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx

from agentflow.core.config import settings
from agentflow.engine.errors import ConfigurationError, RateLimitError
from agentflow.engine.normalizer import extract_tool_output, normalize_usage
from agentflow.engine.types import (
    ChatMessage,
    DispatchResult,
    Provider,
    ToolExecution,
    ToolInvocation,
    ToolServerConfig,
    Usage,
)

logger = logging.getLogger(__name__)

_RATE_LIMIT_BODY_MARKERS = ("rate limit", "rate_limit", "ratelimit")


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: str
    tool_execution: ToolExecution = ToolExecution.CLIENT

    def __init__(self, api_key: str, timeout: float | None = None):
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    @abstractmethod
    async def complete(self, model: str, messages: Sequence[ChatMessage]) -> DispatchResult:
        """Plain completion without tools."""
        ...

    async def complete_with_server_tools(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        servers: Sequence[ToolServerConfig],
    ) -> DispatchResult:
        """Completion where the provider calls the tool servers itself."""
        raise NotImplementedError(f"{self.provider} does not support server-managed tools")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, url: str, payload: dict, headers: dict[str, str] | None = None) -> dict:
        """POST a JSON payload and return the decoded body, mapping errors."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=payload, headers=headers or self._headers())

        if resp.status_code == 429:
            raise RateLimitError(
                f"Rate limited by {self.provider} (429)",
                headers=resp.headers,
            )
        if resp.status_code in (401, 403):
            raise ConfigurationError(
                f"Invalid API key for {self.provider} (HTTP {resp.status_code})",
                status_code=resp.status_code,
                error_code="invalid_api_key",
            )
        if resp.status_code >= 400:
            body = resp.text.lower()
            if any(marker in body for marker in _RATE_LIMIT_BODY_MARKERS):
                raise RateLimitError(
                    f"Rate limited by {self.provider}: {resp.text[:200]}",
                    status_code=resp.status_code,
                    headers=resp.headers,
                )
            resp.raise_for_status()

        return resp.json()


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API adapter with MCP connector support."""

    provider = Provider.ANTHROPIC.value
    tool_execution = ToolExecution.SERVER
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"
    mcp_beta = "mcp-client-2025-04-04"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _payload(self, model: str, messages: Sequence[ChatMessage]) -> dict:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": settings.anthropic_max_tokens,
            "messages": [m.to_dict() for m in messages if m.role != "system"],
        }
        if system:
            payload["system"] = system
        return payload

    async def complete(self, model: str, messages: Sequence[ChatMessage]) -> DispatchResult:
        start = time.monotonic()
        data = await self._post(self.api_url, self._payload(model, messages))
        result = self._parse(data, model)
        result.latency_ms = int((time.monotonic() - start) * 1000)
        return result

    async def complete_with_server_tools(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        servers: Sequence[ToolServerConfig],
    ) -> DispatchResult:
        start = time.monotonic()
        payload = self._payload(model, messages)

        mcp_servers = []
        for server in servers:
            # Arcade gateways are not MCP connector compatible
            if "arcade" in server.name.lower():
                logger.warning("Skipping Arcade tool server %s for Anthropic MCP connector", server.name)
                continue
            entry: dict[str, Any] = {"type": "url", "url": server.url, "name": server.name}
            if server.auth_token:
                entry["authorization_token"] = server.auth_token
            tool_names = server.tool_names()
            if tool_names:
                entry["tool_configuration"] = {"enabled": True, "allowed_tools": tool_names}
            mcp_servers.append(entry)
        if mcp_servers:
            payload["mcp_servers"] = mcp_servers

        headers = self._headers()
        headers["anthropic-beta"] = self.mcp_beta

        data = await self._post(self.api_url, payload, headers=headers)
        result = self._parse(data, model)
        result.latency_ms = int((time.monotonic() - start) * 1000)
        return result

    def _parse(self, data: dict, model: str) -> DispatchResult:
        content = data.get("content") or []
        texts = [block.get("text", "") for block in content if block.get("type") == "text"]
        tool_uses = [block for block in content if block.get("type") in ("tool_use", "mcp_tool_use")]
        tool_results = [block for block in content if block.get("type") in ("tool_result", "mcp_tool_result")]
        results_by_id = {block.get("tool_use_id"): block for block in tool_results if block.get("tool_use_id")}

        invocations = []
        for idx, use in enumerate(tool_uses):
            result_block = results_by_id.get(use.get("id"))
            if result_block is None and idx < len(tool_results):
                result_block = tool_results[idx]
            invocations.append(
                ToolInvocation(
                    id=use.get("id", ""),
                    type=use.get("type", "tool_use"),
                    name=use.get("name", ""),
                    server_name=use.get("server_name") or "MCP",
                    arguments=use.get("input"),
                    output=extract_tool_output(result_block) if result_block is not None else None,
                )
            )

        return DispatchResult(
            text="\n".join(texts),
            usage=normalize_usage(data.get("usage")),
            tool_invocations=invocations,
            model_version=data.get("model", model),
            provider=self.provider,
            raw=data,
        )


# ---------------------------------------------------------------------------
# OpenAI Adapter
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter (client-managed tools)."""

    provider = Provider.OPENAI.value
    tool_execution = ToolExecution.CLIENT
    base_url = "https://api.openai.com/v1"

    async def request_completion(
        self,
        model: str,
        messages: Sequence[dict],
        tools: list[dict] | None = None,
    ) -> tuple[dict, Usage, str]:
        """One chat completion call.

        Returns the assistant message dict, its usage and the model version.
        """
        payload: dict[str, Any] = {"model": model, "messages": list(messages)}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        data = await self._post(f"{self.base_url}/chat/completions", payload)
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message, normalize_usage(data.get("usage")), data.get("model", model)

    async def complete(self, model: str, messages: Sequence[ChatMessage]) -> DispatchResult:
        start = time.monotonic()
        message, usage, model_version = await self.request_completion(model, [m.to_dict() for m in messages])
        return DispatchResult(
            text=message.get("content") or "",
            usage=usage,
            model_version=model_version,
            provider=self.provider,
            latency_ms=int((time.monotonic() - start) * 1000),
        )


# ---------------------------------------------------------------------------
# Groq Adapter
# ---------------------------------------------------------------------------


class GroqAdapter(OpenAIAdapter):
    """Groq adapter: OpenAI-compatible chat plus Responses API MCP tools."""

    provider = Provider.GROQ.value
    tool_execution = ToolExecution.SERVER
    base_url = "https://api.groq.com/openai/v1"

    async def complete_with_server_tools(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        servers: Sequence[ToolServerConfig],
    ) -> DispatchResult:
        start = time.monotonic()
        tools = []
        for server in servers:
            tool: dict[str, Any] = {
                "type": "mcp",
                "server_label": server.name,
                "server_url": server.url,
                "require_approval": "never",
            }
            headers = dict(server.headers)
            if server.auth_token:
                headers.setdefault("Authorization", f"Bearer {server.auth_token}")
            if headers:
                tool["headers"] = headers
            tool_names = server.tool_names()
            if tool_names:
                tool["allowed_tools"] = tool_names
            tools.append(tool)

        # The Responses API takes the final user turn as input
        payload = {
            "model": model,
            "input": messages[-1].content if messages else "",
            "tools": tools,
        }
        data = await self._post(f"{self.base_url}/responses", payload)

        outputs = data.get("output") or []
        text = data.get("output_text")
        if text is None:
            text = "\n".join(
                part.get("text", "")
                for item in outputs
                if item.get("type") == "message"
                for part in item.get("content") or []
                if part.get("type") == "output_text"
            )

        invocations = []
        for item in outputs:
            if item.get("type") not in ("mcp_call", "tool_use"):
                continue
            arguments = item.get("arguments", item.get("input"))
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except ValueError:
                    pass
            output = item.get("output")
            if item.get("error"):
                output = {"error": item["error"]}
            invocations.append(
                ToolInvocation(
                    id=item.get("id", ""),
                    type=item.get("type", "mcp_call"),
                    name=item.get("name", ""),
                    server_name=item.get("server_label") or "MCP",
                    arguments=arguments,
                    output=output,
                )
            )

        return DispatchResult(
            text=text or "",
            usage=normalize_usage(data.get("usage")),
            tool_invocations=invocations,
            model_version=data.get("model", model),
            provider=self.provider,
            latency_ms=int((time.monotonic() - start) * 1000),
            raw=data,
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[BaseProviderAdapter]] = {
    Provider.ANTHROPIC.value: AnthropicAdapter,
    Provider.OPENAI.value: OpenAIAdapter,
    Provider.GROQ.value: GroqAdapter,
}


def get_adapter(provider: str, api_key: str, timeout: float | None = None) -> BaseProviderAdapter:
    """Factory: create an adapter instance for the given provider."""
    cls = ADAPTER_REGISTRY.get(provider)
    if cls is None:
        raise ConfigurationError(f"Unsupported provider: {provider}", error_code="unsupported_provider")
    return cls(api_key=api_key, timeout=timeout)
