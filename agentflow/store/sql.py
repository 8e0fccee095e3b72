"""SQLAlchemy-backed store (PostgreSQL in production)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.core.encryption import decrypt_value, encrypt_value, rotate_value
from agentflow.engine.types import ApprovalRecord, ApprovalStatus, ToolServerConfig
from agentflow.models import Approval, McpServer, ProviderKey
from agentflow.store.base import ExecutionStore

logger = logging.getLogger(__name__)


def _server_config(row: McpServer) -> ToolServerConfig:
    return ToolServerConfig(
        name=row.name,
        url=row.url,
        auth_token=decrypt_value(row.access_token) or None if row.access_token else None,
        description=row.description or "",
        auth_type=row.auth_type or "",
        available_tools=tuple(row.tools or ()),
        headers=dict(row.headers or {}),
    )


def _approval_record(row: Approval) -> ApprovalRecord:
    return ApprovalRecord(
        approval_id=row.approval_id,
        workflow_id=row.workflow_id,
        execution_id=row.execution_id,
        node_id=row.node_id,
        message=row.message or "",
        status=ApprovalStatus(row.status),
        user_id=row.user_id,
        created_by=row.created_by,
        responded_by=row.responded_by,
        created_at=row.created_at,
        responded_at=row.responded_at,
    )


class SqlStore(ExecutionStore):
    """Store on top of an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # -- Tool servers ---------------------------------------------------------

    async def add_tool_server(
        self,
        config: ToolServerConfig,
        user_id: str | None = None,
        server_id: str | None = None,
        enabled: bool = True,
    ) -> str:
        """Persist a tool server and return its id."""
        row = McpServer(
            name=config.name,
            url=config.url,
            description=config.description or None,
            auth_type=config.auth_type or None,
            access_token=encrypt_value(config.auth_token) if config.auth_token else None,
            tools=list(config.available_tools),
            headers=dict(config.headers),
            enabled=enabled,
            user_id=user_id,
        )
        if server_id:
            row.id = server_id
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row.id

    async def get_tool_servers(self, server_ids: Sequence[str]) -> dict[str, ToolServerConfig]:
        if not server_ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(select(McpServer).where(McpServer.id.in_(list(server_ids))))
            return {row.id: _server_config(row) for row in result.scalars()}

    async def list_tool_servers(self, user_id: str, enabled_only: bool = True) -> list[ToolServerConfig]:
        stmt = select(McpServer).where(McpServer.user_id == user_id).order_by(McpServer.created_at)
        if enabled_only:
            stmt = stmt.where(McpServer.enabled.is_(True))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_server_config(row) for row in result.scalars()]

    # -- Approvals ------------------------------------------------------------

    async def create_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        row = Approval(
            approval_id=record.approval_id,
            workflow_id=record.workflow_id,
            execution_id=record.execution_id,
            node_id=record.node_id,
            message=record.message,
            status=record.status.value,
            user_id=record.user_id,
            created_by=record.created_by,
            created_at=record.created_at,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _approval_record(row)

    async def get_approval(self, approval_id: str) -> ApprovalRecord | None:
        async with self.session_factory() as session:
            row = await session.get(Approval, approval_id)
            return _approval_record(row) if row else None

    async def update_approval_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None = None,
    ) -> ApprovalRecord | None:
        # Conditional UPDATE: only one responder can win the pending -> terminal transition
        stmt = (
            update(Approval)
            .where(Approval.approval_id == approval_id, Approval.status == ApprovalStatus.PENDING.value)
            .values(status=status.value, responded_by=responded_by, responded_at=datetime.now(timezone.utc))
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get_approval(approval_id)

    async def list_approvals(
        self,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRecord]:
        stmt = select(Approval).order_by(Approval.created_at)
        if workflow_id is not None:
            stmt = stmt.where(Approval.workflow_id == workflow_id)
        if execution_id is not None:
            stmt = stmt.where(Approval.execution_id == execution_id)
        if status is not None:
            stmt = stmt.where(Approval.status == status.value)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_approval_record(row) for row in result.scalars()]

    # -- Credentials ----------------------------------------------------------

    async def set_provider_key(self, user_id: str, provider: str, api_key: str) -> None:
        """Store (or replace) a user's encrypted key for a provider."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderKey).where(ProviderKey.user_id == user_id, ProviderKey.provider == provider)
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(ProviderKey(user_id=user_id, provider=provider, encrypted_key=encrypt_value(api_key)))
            else:
                row.encrypted_key = encrypt_value(api_key)
            await session.commit()

    async def get_provider_credentials(self, user_id: str) -> dict[str, str]:
        async with self.session_factory() as session:
            result = await session.execute(select(ProviderKey).where(ProviderKey.user_id == user_id))
            credentials = {}
            for row in result.scalars():
                key = decrypt_value(row.encrypted_key)
                if key:
                    credentials[row.provider] = key
                else:
                    logger.warning("Could not decrypt %s key for user %s", row.provider, user_id)
            return credentials

    async def rotate_secrets(self) -> int:
        """Re-encrypt stored provider keys and tool tokens under the primary key.

        Rows no configured key can read are left as they are and logged.
        Returns the number of values re-encrypted.
        """
        rotated = 0
        async with self.session_factory() as session:
            keys = await session.execute(select(ProviderKey))
            for row in keys.scalars():
                fresh = rotate_value(row.encrypted_key)
                if fresh is None:
                    logger.warning("Cannot rotate %s key for user %s: no matching key", row.provider, row.user_id)
                    continue
                row.encrypted_key = fresh
                rotated += 1

            servers = await session.execute(select(McpServer).where(McpServer.access_token.is_not(None)))
            for row in servers.scalars():
                fresh = rotate_value(row.access_token)
                if fresh is None:
                    logger.warning("Cannot rotate access token of tool server %s: no matching key", row.id)
                    continue
                row.access_token = fresh
                rotated += 1

            await session.commit()
        logger.info("Re-encrypted %d stored secrets", rotated)
        return rotated
