"""JSON-RPC 2.0 client for tool (MCP) servers.

Used for client-managed tool execution, where the provider only asks for a
tool call and we run it ourselves.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from agentflow.core.config import settings
from agentflow.engine.errors import ToolExecutionError
from agentflow.engine.types import ToolServerConfig

logger = logging.getLogger(__name__)


def _headers(server: ToolServerConfig) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
    if server.auth_token:
        headers["Authorization"] = f"Bearer {server.auth_token}"
    # Stored and legacy inline configs may carry numeric header values
    headers.update({str(k): str(v) for k, v in server.headers.items() if v is not None})
    return headers


async def _rpc(server: ToolServerConfig, method: str, params: dict[str, Any], timeout: float | None) -> Any:
    envelope = {
        "jsonrpc": "2.0",
        "id": uuid.uuid4().hex[:16],
        "method": method,
        "params": params,
    }
    timeout = timeout if timeout is not None else settings.tool_server_timeout_seconds

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(server.url, json=envelope, headers=_headers(server))
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPStatusError as e:
        raise ToolExecutionError(
            f"Tool server {server.name} returned HTTP {e.response.status_code}",
            status_code=e.response.status_code,
            server_name=server.name,
        ) from e
    except httpx.HTTPError as e:
        raise ToolExecutionError(f"Tool server {server.name} unreachable: {e}", server_name=server.name) from e
    except ValueError as e:
        raise ToolExecutionError(f"Tool server {server.name} returned invalid JSON", server_name=server.name) from e

    if isinstance(data, dict) and data.get("error"):
        error = data["error"]
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise ToolExecutionError(f"Tool server {server.name} error: {message}", server_name=server.name)

    if isinstance(data, dict) and "result" in data:
        return data["result"]
    return data


async def call_tool(
    server: ToolServerConfig,
    tool_name: str,
    arguments: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> Any:
    """Invoke ``tools/call`` on a server and return its result payload.

    Raises:
        ToolExecutionError: on transport failures, HTTP errors or a JSON-RPC error.
    """
    logger.debug("Calling tool %s on %s", tool_name, server.name)
    return await _rpc(server, "tools/call", {"name": tool_name, "arguments": arguments or {}}, timeout)


async def list_tools(server: ToolServerConfig, timeout: float | None = None) -> list[dict]:
    """Discover the tools a server exposes via ``tools/list``."""
    result = await _rpc(server, "tools/list", {}, timeout)
    if isinstance(result, dict):
        tools = result.get("tools", [])
    else:
        tools = result
    return [t for t in tools or [] if isinstance(t, dict)]
