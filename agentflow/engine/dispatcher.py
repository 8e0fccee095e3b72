"""Provider dispatcher: one logical LLM call per request.

The dispatch strategy is picked once per execution by ``select_strategy``:

  - ``NoTools``: plain completion
  - ``ServerManagedTools``: the provider (Anthropic MCP connector, Groq
    Responses API) calls the tool servers and reports invocations
  - ``ClientManagedTools``: the provider asks for function calls, we run them
    against the tool servers over JSON-RPC, append the results and make
    exactly one follow-up completion

Client-managed tool use is a single round. Tool calls requested again in the
follow-up are not executed; the follow-up content (or ``""``) is final.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from agentflow.core.metrics import LLM_TOKENS, PROVIDER_CALLS, TOOL_CALLS
from agentflow.engine import tool_client
from agentflow.engine.errors import ConfigurationError, ToolExecutionError
from agentflow.engine.normalizer import normalize_result
from agentflow.engine.provider_adapters import ADAPTER_REGISTRY, OpenAIAdapter, get_adapter
from agentflow.engine.types import (
    ClientManagedTools,
    DispatchRequest,
    DispatchResult,
    DispatchStrategy,
    NoTools,
    ServerManagedTools,
    ToolExecution,
    ToolInvocation,
    ToolServerConfig,
    strategy_name,
)

logger = logging.getLogger(__name__)

_FUNCTION_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def select_strategy(provider: str, servers: Sequence[ToolServerConfig]) -> DispatchStrategy:
    """Choose how tools are executed for this provider."""
    if not servers:
        return NoTools()
    adapter_cls = ADAPTER_REGISTRY.get(provider)
    if adapter_cls is not None and adapter_cls.tool_execution == ToolExecution.SERVER:
        return ServerManagedTools(servers=tuple(servers))
    return ClientManagedTools(servers=tuple(servers))


def _function_name(name: str) -> str:
    return _FUNCTION_NAME_RE.sub("_", name).strip("_")[:64] or "unknown_tool"


@dataclass(frozen=True)
class _FunctionRoute:
    server: ToolServerConfig
    tool_name: str


def build_function_specs(servers: Sequence[ToolServerConfig]) -> tuple[list[dict], dict[str, _FunctionRoute]]:
    """OpenAI function definitions for the given servers, plus call routing.

    Servers that declare tool schemas expose one function per tool. Others
    expose a single function named after the server, using the server's own
    schema when it has one.
    """
    specs: list[dict] = []
    routes: dict[str, _FunctionRoute] = {}

    for server in servers:
        declared = [t for t in server.available_tools if isinstance(t, Mapping) and t.get("name")]
        if declared:
            for tool in declared:
                name = _function_name(str(tool["name"]))
                if name in routes:
                    continue
                schema = tool.get("inputSchema") or tool.get("parameters") or {}
                routes[name] = _FunctionRoute(server=server, tool_name=str(tool["name"]))
                specs.append(_function_spec(name, tool.get("description") or server.description, schema))
            continue

        name = _function_name(server.name)
        if name in routes:
            continue
        routes[name] = _FunctionRoute(server=server, tool_name=server.name)
        specs.append(_function_spec(name, server.description, server.schema or {}))

    return specs, routes


def _function_spec(name: str, description: str, schema: Mapping[str, Any]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description or "No description",
            "parameters": {
                "type": "object",
                "properties": dict(schema.get("properties") or {}),
                "required": list(schema.get("required") or []),
            },
        },
    }


def require_api_key(credentials: Mapping[str, str], provider: str) -> str:
    """API key for ``provider``, or a ConfigurationError telling the user where to add one."""
    api_key = credentials.get(provider)
    if not api_key:
        raise ConfigurationError(
            f"No API key available for provider: {provider}. Please add your LLM provider key in Settings.",
            error_code="missing_api_key",
        )
    return api_key


class ProviderDispatcher:
    """Executes one resolved request against its provider."""

    def __init__(self, timeout: float | None = None, tool_timeout: float | None = None):
        self.timeout = timeout
        self.tool_timeout = tool_timeout

    async def dispatch(self, request: DispatchRequest, credentials: Mapping[str, str]) -> DispatchResult:
        api_key = require_api_key(credentials, request.provider)

        adapter = get_adapter(request.provider, api_key, timeout=self.timeout)
        strategy = request.strategy
        PROVIDER_CALLS.labels(provider=request.provider, strategy=strategy_name(strategy)).inc()

        if isinstance(strategy, ServerManagedTools):
            result = await adapter.complete_with_server_tools(request.model, request.messages, strategy.servers)
        elif isinstance(strategy, ClientManagedTools):
            if not isinstance(adapter, OpenAIAdapter):
                raise ConfigurationError(f"{request.provider} does not support client-managed tools")
            result = await self._dispatch_client_tools(adapter, request, strategy)
        else:
            result = await adapter.complete(request.model, request.messages)

        result = normalize_result(result)
        LLM_TOKENS.labels(provider=request.provider, direction="input").inc(result.usage.input_tokens)
        LLM_TOKENS.labels(provider=request.provider, direction="output").inc(result.usage.output_tokens)
        logger.info(
            "Dispatched %s/%s (%s): %d tokens, %d tool calls",
            request.provider,
            request.model,
            strategy_name(strategy),
            result.usage.total_tokens,
            len(result.tool_invocations),
            extra={"provider": request.provider},
        )
        return result

    async def _dispatch_client_tools(
        self,
        adapter: OpenAIAdapter,
        request: DispatchRequest,
        strategy: ClientManagedTools,
    ) -> DispatchResult:
        specs, routes = build_function_specs(strategy.servers)
        messages: list[dict] = [m.to_dict() for m in request.messages]

        message, usage, model_version = await adapter.request_completion(request.model, messages, tools=specs)
        calls = message.get("tool_calls") or []
        if not calls:
            return DispatchResult(
                text=message.get("content") or "",
                usage=usage,
                model_version=model_version,
                provider=request.provider,
            )

        invocations = await asyncio.gather(*(self._run_tool_call(call, routes) for call in calls))

        follow_up = [
            *messages,
            message,
            *(
                {
                    "role": "tool",
                    "tool_call_id": inv.id,
                    "content": json.dumps(inv.output, ensure_ascii=False, default=str),
                }
                for inv in invocations
            ),
        ]
        PROVIDER_CALLS.labels(provider=request.provider, strategy="client_tools_follow_up").inc()
        final_message, final_usage, model_version = await adapter.request_completion(request.model, follow_up)
        if final_message.get("tool_calls"):
            logger.info("Follow-up requested more tool calls; returning its content as final")

        return DispatchResult(
            text=final_message.get("content") or "",
            usage=usage + final_usage,
            tool_invocations=list(invocations),
            model_version=model_version,
            provider=request.provider,
        )

    async def _run_tool_call(self, call: dict, routes: Mapping[str, _FunctionRoute]) -> ToolInvocation:
        function = call.get("function") or {}
        name = function.get("name", "")
        invocation = ToolInvocation(id=call.get("id", ""), name=name, type="function")

        try:
            raw_args = function.get("arguments") or "{}"
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
        except ValueError:
            arguments = {}
        invocation.arguments = arguments

        route = routes.get(name)
        if route is None:
            TOOL_CALLS.labels(status="not_found").inc()
            invocation.output = {"error": f"Tool server not found for tool: {name}"}
            return invocation

        invocation.server_name = route.server.name
        try:
            invocation.output = await tool_client.call_tool(
                route.server, route.tool_name, arguments, timeout=self.tool_timeout
            )
            TOOL_CALLS.labels(status="success").inc()
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", name, e)
            TOOL_CALLS.labels(status="error").inc()
            invocation.output = {"error": str(e)}
        except Exception as e:
            logger.exception("Tool %s raised %s", name, e.__class__.__name__)
            TOOL_CALLS.labels(status="error").inc()
            invocation.output = {"error": str(e) or e.__class__.__name__}
        return invocation
