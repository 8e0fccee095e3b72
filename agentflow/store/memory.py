"""Dict-backed store for tests and local runs."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Sequence

from agentflow.engine.types import ApprovalRecord, ApprovalStatus, ToolServerConfig
from agentflow.store.base import ExecutionStore


class InMemoryStore(ExecutionStore):
    def __init__(self):
        self._servers: dict[str, tuple[ToolServerConfig, str | None, bool]] = {}
        self._approvals: dict[str, ApprovalRecord] = {}
        self._credentials: dict[str, dict[str, str]] = {}

    def add_tool_server(
        self,
        server_id: str,
        config: ToolServerConfig,
        user_id: str | None = None,
        enabled: bool = True,
    ) -> None:
        self._servers[server_id] = (config, user_id, enabled)

    def set_provider_credentials(self, user_id: str, credentials: dict[str, str]) -> None:
        self._credentials[user_id] = dict(credentials)

    async def get_tool_servers(self, server_ids: Sequence[str]) -> dict[str, ToolServerConfig]:
        return {sid: self._servers[sid][0] for sid in server_ids if sid in self._servers}

    async def list_tool_servers(self, user_id: str, enabled_only: bool = True) -> list[ToolServerConfig]:
        return [
            config
            for config, owner, enabled in self._servers.values()
            if owner == user_id and (enabled or not enabled_only)
        ]

    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        if record.approval_id in self._approvals:
            raise ValueError(f"Approval {record.approval_id} already exists")
        self._approvals[record.approval_id] = replace(record)
        return replace(record)

    async def get_approval(self, approval_id: str) -> ApprovalRecord | None:
        record = self._approvals.get(approval_id)
        return replace(record) if record else None

    async def update_approval_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None = None,
    ) -> ApprovalRecord | None:
        record = self._approvals.get(approval_id)
        if record is None or record.status != ApprovalStatus.PENDING:
            return None
        updated = replace(
            record,
            status=status,
            responded_by=responded_by,
            responded_at=datetime.now(timezone.utc),
        )
        self._approvals[approval_id] = updated
        return replace(updated)

    async def list_approvals(
        self,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRecord]:
        matches = [
            replace(r)
            for r in self._approvals.values()
            if (workflow_id is None or r.workflow_id == workflow_id)
            and (execution_id is None or r.execution_id == execution_id)
            and (status is None or r.status == status)
        ]
        return sorted(matches, key=lambda r: r.created_at)

    async def get_provider_credentials(self, user_id: str) -> dict[str, str]:
        return dict(self._credentials.get(user_id, {}))
