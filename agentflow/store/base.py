"""External store contract used by the execution core."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from agentflow.engine.types import ApprovalRecord, ApprovalStatus, ToolServerConfig


class ExecutionStore(ABC):
    """Reads and writes the execution core needs from persistent storage."""

    # Tool servers

    @abstractmethod
    async def get_tool_servers(self, server_ids: Sequence[str]) -> dict[str, ToolServerConfig]:
        """Batch read by id. Unknown ids are simply absent from the result."""
        ...

    @abstractmethod
    async def list_tool_servers(self, user_id: str, enabled_only: bool = True) -> list[ToolServerConfig]:
        ...

    # Approvals

    @abstractmethod
    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        ...

    @abstractmethod
    async def get_approval(self, approval_id: str) -> ApprovalRecord | None:
        ...

    @abstractmethod
    async def update_approval_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None = None,
    ) -> ApprovalRecord | None:
        """Move a pending approval to ``status``.

        Returns the updated record, or None when the approval does not exist
        or is no longer pending.
        """
        ...

    @abstractmethod
    async def list_approvals(
        self,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRecord]:
        """Approvals matching all given filters, oldest first."""
        ...

    # Credentials

    @abstractmethod
    async def get_provider_credentials(self, user_id: str) -> dict[str, str]:
        """Provider id -> decrypted API key for a user."""
        ...
