from agentflow.models.approval import Approval
from agentflow.models.mcp_server import McpServer
from agentflow.models.provider_key import ProviderKey

__all__ = [
    "Approval",
    "McpServer",
    "ProviderKey",
]
