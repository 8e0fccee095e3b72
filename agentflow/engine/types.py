"""Core types and DTOs for the agent-node execution core."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """LLM providers with a dispatch adapter."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GROQ = "groq"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


class ToolExecution(str, Enum):
    """Who runs the tool calls a model asks for."""

    SERVER = "server"  # Provider infrastructure calls the tool servers itself
    CLIENT = "client"  # Provider returns tool calls, we execute them


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"  # Only ever reported by watch(), never stored


DEFAULT_PROVIDER = Provider.OPENAI.value


def parse_model(model: str) -> tuple[str, str]:
    """Split ``provider/modelName`` into its parts.

    Only the first slash separates the provider, so ``groq/openai/gpt-oss-120b``
    yields ``("groq", "openai/gpt-oss-120b")``. Without a slash the provider
    defaults to OpenAI.
    """
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.strip().lower(), model_name
    return DEFAULT_PROVIDER, model


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ChatMessage:
        content = data.get("content", "")
        return cls(role=str(data.get("role", "user")), content=content if isinstance(content, str) else str(content))


@dataclass
class ExecutionState:
    """The slice of a workflow execution an agent node reads.

    The core never mutates it; updates are returned on ``AgentNodeResult``.
    """

    chat_history: list[ChatMessage] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    execution_id: str = ""
    workflow_id: str = ""


# ---------------------------------------------------------------------------
# Tool servers and references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolServerConfig:
    """A fully resolved tool (MCP) server."""

    name: str
    url: str
    auth_token: str | None = None
    description: str = ""
    auth_type: str = ""
    available_tools: tuple[Any, ...] = ()  # Tool names or {"name", "description", "inputSchema"} dicts
    headers: Mapping[str, str] = field(default_factory=dict)
    schema: Mapping[str, Any] | None = None  # Function parameters of legacy inline configs

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ToolServerConfig:
        """Build from a stored record or a legacy inline config.

        Legacy configs use camelCase keys and several spellings for the token
        (``accessToken`` / ``authToken``) and tool list (``availableTools`` / ``tools``).
        """
        tools = data.get("availableTools", data.get("available_tools", data.get("tools"))) or ()
        token = data.get("accessToken", data.get("authToken", data.get("auth_token")))
        return cls(
            name=str(data.get("name") or data.get("toolName") or "unknown_tool"),
            url=str(data.get("url") or ""),
            auth_token=token or None,
            description=str(data.get("description") or ""),
            auth_type=str(data.get("authType", data.get("auth_type")) or ""),
            available_tools=tuple(tools),
            headers=dict(data.get("headers") or {}),
            schema=data.get("schema"),
        )

    def tool_names(self) -> list[str]:
        names = []
        for tool in self.available_tools:
            if isinstance(tool, str):
                names.append(tool)
            elif isinstance(tool, Mapping) and tool.get("name"):
                names.append(str(tool["name"]))
        return names


@dataclass(frozen=True)
class BareIdReference:
    """A tool reference stored as a server id, resolved against the store."""

    server_id: str


@dataclass(frozen=True)
class InlineToolConfig:
    """A legacy tool reference that already carries its full configuration."""

    config: ToolServerConfig


ToolReference = Union[BareIdReference, InlineToolConfig]


# ---------------------------------------------------------------------------
# Dispatch strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoTools:
    pass


@dataclass(frozen=True)
class ServerManagedTools:
    servers: tuple[ToolServerConfig, ...]


@dataclass(frozen=True)
class ClientManagedTools:
    servers: tuple[ToolServerConfig, ...]


DispatchStrategy = Union[NoTools, ServerManagedTools, ClientManagedTools]


def strategy_name(strategy: DispatchStrategy) -> str:
    if isinstance(strategy, ServerManagedTools):
        return "server_tools"
    if isinstance(strategy, ClientManagedTools):
        return "client_tools"
    return "no_tools"


# ---------------------------------------------------------------------------
# Agent node
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentNodeSpec:
    """Immutable description of one agent step of a workflow."""

    node_id: str
    instructions: str = ""
    model: str = ""
    output_format: OutputFormat = OutputFormat.TEXT
    include_chat_history: bool = False
    tool_refs: tuple[ToolReference, ...] = ()
    node_name: str = ""

    @property
    def provider(self) -> str:
        return parse_model(self.model)[0]

    @classmethod
    def from_node_data(cls, node_id: str, data: Mapping[str, Any]) -> AgentNodeSpec:
        """Build from a workflow node's ``data`` dict (camelCase, possibly legacy)."""
        from agentflow.engine.tool_resolver import classify_tool_references, migrate_legacy_node_config
        from agentflow.schemas.node import AgentNodeData

        parsed = AgentNodeData.model_validate(migrate_legacy_node_config(data) or {})
        return cls(
            node_id=node_id,
            instructions=parsed.instructions,
            model=parsed.model,
            output_format=OutputFormat.JSON if parsed.output_format == OutputFormat.JSON.value else OutputFormat.TEXT,
            include_chat_history=parsed.include_chat_history,
            # Ids first, then legacy inline configs
            tool_refs=tuple(classify_tool_references([*parsed.mcp_server_ids, *parsed.inline_tool_configs()])),
            node_name=parsed.node_name,
        )


# ---------------------------------------------------------------------------
# Dispatch request / result
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    """Token counters normalized across providers."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolInvocation:
    """One tool call made while answering, with its result when known."""

    name: str
    arguments: Any = None
    output: Any = None
    id: str = ""
    server_name: str = ""
    type: str = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "server_name": self.server_name,
            "arguments": self.arguments,
            "output": self.output,
        }


@dataclass
class DispatchRequest:
    provider: str
    model: str
    messages: list[ChatMessage]
    strategy: DispatchStrategy = field(default_factory=NoTools)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


@dataclass
class DispatchResult:
    """Normalized output of one provider dispatch (possibly two HTTP calls)."""

    text: str = ""
    usage: Usage = field(default_factory=Usage)
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    model_version: str = ""
    provider: str = ""
    latency_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentNodeResult:
    """What an agent node hands back to the workflow engine."""

    output: Any = None
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    chat_history_updates: list[ChatMessage] = field(default_factory=list)
    variable_updates: dict[str, Any] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)
    model_version: str = ""

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict for the execution record."""
        return {
            "output": self.output,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "chat_history_updates": [message.to_dict() for message in self.chat_history_updates],
            "variable_updates": self.variable_updates,
            "usage": self.usage.to_dict(),
            "model_version": self.model_version,
        }


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


@dataclass
class ApprovalRecord:
    approval_id: str
    workflow_id: str
    message: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    execution_id: str | None = None
    node_id: str | None = None
    user_id: str | None = None
    created_by: str | None = None
    responded_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    responded_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "approval_id": self.approval_id,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "message": self.message,
            "status": self.status.value,
            "user_id": self.user_id,
            "created_by": self.created_by,
            "responded_by": self.responded_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }


# ---------------------------------------------------------------------------
# Rate limit buckets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BucketConfig:
    """Token bucket parameters for one provider."""

    provider: str
    refill_rate_per_second: float = 5.0
    capacity: float = 10.0


# Defaults reflect each vendor's published limits: Anthropic strictest, Groq loosest
DEFAULT_BUCKET_CONFIGS: dict[str, BucketConfig] = {
    Provider.ANTHROPIC.value: BucketConfig(Provider.ANTHROPIC.value, refill_rate_per_second=3.0, capacity=5),
    Provider.OPENAI.value: BucketConfig(Provider.OPENAI.value, refill_rate_per_second=10.0, capacity=20),
    Provider.GROQ.value: BucketConfig(Provider.GROQ.value, refill_rate_per_second=15.0, capacity=30),
}
