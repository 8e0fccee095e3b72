"""Tests for the provider adapters (HTTP mocked at httpx.AsyncClient)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agentflow.engine.errors import ConfigurationError, RateLimitError
from agentflow.engine.provider_adapters import (
    AnthropicAdapter,
    GroqAdapter,
    OpenAIAdapter,
    get_adapter,
)
from agentflow.engine.signals import extract_rate_limit_info
from agentflow.engine.types import ChatMessage, ToolExecution, ToolServerConfig

MESSAGES = [ChatMessage("system", "Be brief."), ChatMessage("user", "Find laptops")]


def _make_httpx_response(status_code: int = 200, json_data=None, text: str | None = None, headers=None):
    request = httpx.Request("POST", "https://llm.example.com")
    if text is not None:
        return httpx.Response(status_code, text=text, headers=headers, request=request)
    return httpx.Response(status_code, json=json_data if json_data is not None else {}, headers=headers, request=request)


def _patched_client(*responses):
    """Patch httpx.AsyncClient; returns (patcher, mock_client)."""
    patcher = patch("agentflow.engine.provider_adapters.httpx.AsyncClient")
    MockClient = patcher.start()
    mock_client = AsyncMock()
    mock_client.post.side_effect = list(responses)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    MockClient.return_value = mock_client
    return patcher, mock_client


@pytest.fixture
def http():
    patchers = []

    def _install(*responses):
        patcher, client = _patched_client(*responses)
        patchers.append(patcher)
        return client

    yield _install
    for patcher in patchers:
        patcher.stop()


# ==========================================================================
# Test: AnthropicAdapter
# ==========================================================================


class TestAnthropicAdapter:
    @pytest.mark.asyncio
    async def test_complete(self, http):
        client = http(
            _make_httpx_response(
                json_data={
                    "model": "claude-sonnet-4-5-20250929",
                    "content": [{"type": "text", "text": "Three laptops found."}],
                    "usage": {"input_tokens": 40, "output_tokens": 12},
                }
            )
        )
        result = await AnthropicAdapter("sk-ant").complete("claude-sonnet-4-5-20250929", MESSAGES)

        assert result.text == "Three laptops found."
        assert result.usage.input_tokens == 40
        assert result.usage.total_tokens == 52
        assert result.provider == "anthropic"

        call = client.post.call_args
        assert call.args[0] == "https://api.anthropic.com/v1/messages"
        payload = call.kwargs["json"]
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Find laptops"}]
        assert payload["max_tokens"] == 4096
        assert call.kwargs["headers"]["x-api-key"] == "sk-ant"
        assert "anthropic-beta" not in call.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_server_tools_payload_and_parsing(self, http):
        client = http(
            _make_httpx_response(
                json_data={
                    "model": "claude-sonnet-4-5-20250929",
                    "content": [
                        {"type": "text", "text": "Searching."},
                        {
                            "type": "mcp_tool_use",
                            "id": "tu_1",
                            "name": "web_search",
                            "server_name": "search",
                            "input": {"q": "laptops"},
                        },
                        {
                            "type": "mcp_tool_result",
                            "tool_use_id": "tu_1",
                            "content": [{"type": "text", "text": "10 results"}],
                        },
                        {"type": "text", "text": "Done."},
                    ],
                    "usage": {"input_tokens": 100, "output_tokens": 20},
                }
            )
        )
        servers = [
            ToolServerConfig(
                name="search", url="https://search.example.com/mcp", auth_token="tok", available_tools=("web_search",)
            ),
            ToolServerConfig(name="Arcade Gateway", url="https://api.arcade.dev/mcp"),
        ]
        result = await AnthropicAdapter("sk-ant").complete_with_server_tools("claude", MESSAGES, servers)

        payload = client.post.call_args.kwargs["json"]
        assert payload["mcp_servers"] == [
            {
                "type": "url",
                "url": "https://search.example.com/mcp",
                "name": "search",
                "authorization_token": "tok",
                "tool_configuration": {"enabled": True, "allowed_tools": ["web_search"]},
            }
        ]
        assert client.post.call_args.kwargs["headers"]["anthropic-beta"] == "mcp-client-2025-04-04"

        assert result.text == "Searching.\nDone."
        assert len(result.tool_invocations) == 1
        invocation = result.tool_invocations[0]
        assert invocation.name == "web_search"
        assert invocation.server_name == "search"
        assert invocation.arguments == {"q": "laptops"}
        assert invocation.output == "10 results"

    @pytest.mark.asyncio
    async def test_tool_error_result(self, http):
        http(
            _make_httpx_response(
                json_data={
                    "content": [
                        {"type": "tool_use", "id": "tu_1", "name": "scrape", "input": {}},
                        {"type": "tool_result", "tool_use_id": "tu_1", "is_error": True, "content": "timeout"},
                    ],
                }
            )
        )
        result = await AnthropicAdapter("sk-ant").complete_with_server_tools("claude", MESSAGES, [])

        assert result.tool_invocations[0].output == {"error": "timeout"}
        assert result.tool_invocations[0].server_name == "MCP"
        assert result.text == ""


# ==========================================================================
# Test: OpenAIAdapter
# ==========================================================================


class TestOpenAIAdapter:
    @pytest.mark.asyncio
    async def test_complete(self, http):
        client = http(
            _make_httpx_response(
                json_data={
                    "model": "gpt-4o-2024-08-06",
                    "choices": [{"message": {"role": "assistant", "content": "Hello"}}],
                    "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
                }
            )
        )
        result = await OpenAIAdapter("sk-openai").complete("gpt-4o", MESSAGES)

        assert result.text == "Hello"
        assert result.usage.total_tokens == 12
        assert result.model_version == "gpt-4o-2024-08-06"

        call = client.post.call_args
        assert call.args[0] == "https://api.openai.com/v1/chat/completions"
        assert call.kwargs["headers"]["Authorization"] == "Bearer sk-openai"
        assert "tools" not in call.kwargs["json"]

    @pytest.mark.asyncio
    async def test_request_completion_with_tools(self, http):
        client = http(
            _make_httpx_response(
                json_data={"choices": [{"message": {"content": None, "tool_calls": [{"id": "c1"}]}}]}
            )
        )
        tools = [{"type": "function", "function": {"name": "web_search", "parameters": {}}}]
        message, usage, model_version = await OpenAIAdapter("sk").request_completion(
            "gpt-4o", [{"role": "user", "content": "hi"}], tools=tools
        )

        assert message["tool_calls"] == [{"id": "c1"}]
        assert usage.total_tokens == 0
        assert model_version == "gpt-4o"
        assert client.post.call_args.kwargs["json"]["tool_choice"] == "auto"


# ==========================================================================
# Test: error mapping
# ==========================================================================


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_429_carries_headers(self, http):
        http(
            _make_httpx_response(
                429,
                json_data={"error": {"message": "slow down"}},
                headers={"retry-after": "3", "x-ratelimit-remaining-tokens": "0"},
            )
        )
        with pytest.raises(RateLimitError) as exc_info:
            await GroqAdapter("gsk").complete("llama-3.3-70b-versatile", MESSAGES)

        assert "groq" in str(exc_info.value)
        info = extract_rate_limit_info(exc_info.value)
        assert info.retry_after == 3
        assert info.remaining_tokens == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, http, status):
        http(_make_httpx_response(status, json_data={"error": "invalid x-api-key"}))
        with pytest.raises(ConfigurationError, match=f"Invalid API key for anthropic \\(HTTP {status}\\)"):
            await AnthropicAdapter("bad").complete("claude", MESSAGES)

    @pytest.mark.asyncio
    async def test_rate_limit_marker_in_error_body(self, http):
        http(_make_httpx_response(500, text='{"error": {"type": "rate_limit_error"}}'))
        with pytest.raises(RateLimitError):
            await OpenAIAdapter("sk").complete("gpt-4o", MESSAGES)

    @pytest.mark.asyncio
    async def test_other_errors_raise_http_status_error(self, http):
        http(_make_httpx_response(500, text="internal error"))
        with pytest.raises(httpx.HTTPStatusError):
            await OpenAIAdapter("sk").complete("gpt-4o", MESSAGES)


# ==========================================================================
# Test: GroqAdapter
# ==========================================================================


class TestGroqAdapter:
    @pytest.mark.asyncio
    async def test_chat_uses_groq_base_url(self, http):
        client = http(_make_httpx_response(json_data={"choices": [{"message": {"content": "ok"}}]}))
        result = await GroqAdapter("gsk").complete("openai/gpt-oss-120b", MESSAGES)

        assert result.text == "ok"
        assert client.post.call_args.args[0] == "https://api.groq.com/openai/v1/chat/completions"
        assert client.post.call_args.kwargs["json"]["model"] == "openai/gpt-oss-120b"

    @pytest.mark.asyncio
    async def test_server_tools_via_responses_api(self, http):
        client = http(
            _make_httpx_response(
                json_data={
                    "model": "openai/gpt-oss-120b",
                    "output": [
                        {
                            "type": "mcp_call",
                            "id": "mc_1",
                            "name": "web_search",
                            "server_label": "search",
                            "arguments": '{"q": "laptops"}',
                            "output": "10 results",
                        },
                        {
                            "type": "mcp_call",
                            "id": "mc_2",
                            "name": "scrape",
                            "server_label": "search",
                            "arguments": "{}",
                            "error": "blocked",
                        },
                        {
                            "type": "message",
                            "content": [{"type": "output_text", "text": "Found 10 laptops."}],
                        },
                    ],
                    "usage": {"input_tokens": 300, "output_tokens": 50, "total_tokens": 350},
                }
            )
        )
        servers = [
            ToolServerConfig(
                name="search",
                url="https://search.example.com/mcp",
                auth_token="tok",
                headers={"X-Org": "acme"},
                available_tools=({"name": "web_search"}, {"name": "scrape"}),
            )
        ]
        result = await GroqAdapter("gsk").complete_with_server_tools("openai/gpt-oss-120b", MESSAGES, servers)

        call = client.post.call_args
        assert call.args[0] == "https://api.groq.com/openai/v1/responses"
        assert call.kwargs["json"]["input"] == "Find laptops"
        assert call.kwargs["json"]["tools"] == [
            {
                "type": "mcp",
                "server_label": "search",
                "server_url": "https://search.example.com/mcp",
                "require_approval": "never",
                "headers": {"X-Org": "acme", "Authorization": "Bearer tok"},
                "allowed_tools": ["web_search", "scrape"],
            }
        ]

        assert result.text == "Found 10 laptops."
        assert result.usage.total_tokens == 350
        assert [i.name for i in result.tool_invocations] == ["web_search", "scrape"]
        assert result.tool_invocations[0].arguments == {"q": "laptops"}
        assert result.tool_invocations[1].output == {"error": "blocked"}

    @pytest.mark.asyncio
    async def test_output_text_preferred(self, http):
        http(_make_httpx_response(json_data={"output_text": "direct", "output": []}))
        result = await GroqAdapter("gsk").complete_with_server_tools("m", MESSAGES, [])
        assert result.text == "direct"


# ==========================================================================
# Test: registry
# ==========================================================================


class TestGetAdapter:
    def test_known_providers(self):
        assert isinstance(get_adapter("anthropic", "k"), AnthropicAdapter)
        assert isinstance(get_adapter("groq", "k"), GroqAdapter)
        assert get_adapter("openai", "k", timeout=5.0).timeout == 5.0

    def test_tool_execution_modes(self):
        assert AnthropicAdapter.tool_execution is ToolExecution.SERVER
        assert GroqAdapter.tool_execution is ToolExecution.SERVER
        assert OpenAIAdapter.tool_execution is ToolExecution.CLIENT

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unsupported provider: mistral"):
            get_adapter("mistral", "k")

    @pytest.mark.asyncio
    async def test_openai_has_no_server_tools(self):
        with pytest.raises(NotImplementedError):
            await OpenAIAdapter("k").complete_with_server_tools("gpt-4o", MESSAGES, [])
