"""Execution engine: owns the shared rate registry for its lifetime.

Usage:
    engine = ExecutionEngine.from_settings(store=InMemoryStore())

    node = AgentNodeSpec.from_node_data("agent-1", {"model": "groq/llama-3.3-70b-versatile", ...})
    result = await engine.execute_agent_node(node, ExecutionState(), credentials={"groq": "gsk_..."})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from agentflow.core.config import settings, validate_settings
from agentflow.engine.approval import ApprovalGate
from agentflow.engine.executor import AgentNodeExecutor
from agentflow.engine.token_bucket import ProviderRateRegistry
from agentflow.engine.types import AgentNodeResult, AgentNodeSpec, ExecutionState
from agentflow.store.base import ExecutionStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionEngine:
    registry: ProviderRateRegistry
    store: ExecutionStore
    executor: AgentNodeExecutor
    approvals: ApprovalGate

    @classmethod
    def build(cls, registry: ProviderRateRegistry, store: ExecutionStore, **executor_kwargs) -> ExecutionEngine:
        return cls(
            registry=registry,
            store=store,
            executor=AgentNodeExecutor(registry, store, **executor_kwargs),
            approvals=ApprovalGate(store),
        )

    @classmethod
    def from_settings(cls, store: ExecutionStore | None = None, **executor_kwargs) -> ExecutionEngine:
        """Validate settings and wire an engine. Defaults to the PostgreSQL store."""
        validate_settings()
        if store is None:
            from agentflow.db.postgres import async_session_factory
            from agentflow.store.sql import SqlStore

            store = SqlStore(async_session_factory)

        registry = ProviderRateRegistry.from_settings(settings)
        logger.info(
            "Execution engine ready (providers: %s, env: %s)",
            ", ".join(registry.providers),
            settings.app_env,
        )
        return cls.build(registry, store, **executor_kwargs)

    async def execute_agent_node(
        self,
        node: AgentNodeSpec,
        state: ExecutionState,
        credentials: Mapping[str, str] | None = None,
        user_id: str | None = None,
        max_retries: int | None = None,
    ) -> AgentNodeResult:
        """Run one agent node; credentials come from the store when not given."""
        if credentials is None and user_id:
            credentials = await self.store.get_provider_credentials(user_id)
        return await self.executor.execute(node, state, credentials, max_retries=max_retries)

    def rate_limit_stats(self) -> list[dict]:
        return self.registry.get_all_stats()
