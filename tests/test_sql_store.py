"""Tests for the SQLAlchemy store on an in-memory SQLite database."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agentflow.core.config import settings
from agentflow.core.encryption import reset_fernet
from agentflow.db.postgres import init_models
from agentflow.engine.approval import ApprovalGate
from agentflow.engine.errors import ApprovalStateError
from agentflow.engine.tool_resolver import ToolResolver
from agentflow.engine.types import ApprovalRecord, ApprovalStatus, BareIdReference, ToolServerConfig
from agentflow.models import McpServer, ProviderKey
from agentflow.store.sql import SqlStore


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(bind=engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlStore(session_factory)


# ==========================================================================
# Test: tool servers
# ==========================================================================


class TestSqlToolServers:
    @pytest.mark.asyncio
    async def test_round_trip_with_encrypted_token(self, sql_store, session_factory):
        config = ToolServerConfig(
            name="search",
            url="https://search.example.com/mcp",
            auth_token="secret-token",
            available_tools=("web_search",),
            headers={"X-Org": "acme"},
        )
        server_id = await sql_store.add_tool_server(config, user_id="u1", server_id="s1")

        assert server_id == "s1"
        found = await sql_store.get_tool_servers(["s1", "missing"])
        assert list(found) == ["s1"]
        assert found["s1"].auth_token == "secret-token"
        assert found["s1"].tool_names() == ["web_search"]
        assert found["s1"].headers == {"X-Org": "acme"}

        async with session_factory() as session:
            row = (await session.execute(select(McpServer))).scalar_one()
        assert row.access_token != b"secret-token"

    @pytest.mark.asyncio
    async def test_generated_id_and_no_token(self, sql_store):
        server_id = await sql_store.add_tool_server(ToolServerConfig(name="open", url="https://open.example.com"))
        assert len(server_id) == 32
        assert (await sql_store.get_tool_servers([server_id]))[server_id].auth_token is None

    @pytest.mark.asyncio
    async def test_list_enabled(self, sql_store):
        await sql_store.add_tool_server(ToolServerConfig(name="a", url="https://a"), user_id="u1")
        await sql_store.add_tool_server(ToolServerConfig(name="b", url="https://b"), user_id="u1", enabled=False)
        await sql_store.add_tool_server(ToolServerConfig(name="c", url="https://c"), user_id="u2")

        assert [s.name for s in await sql_store.list_tool_servers("u1")] == ["a"]
        assert {s.name for s in await sql_store.list_tool_servers("u1", enabled_only=False)} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_resolver_on_sql_store(self, sql_store):
        await sql_store.add_tool_server(ToolServerConfig(name="a", url="https://a"), server_id="s1")
        resolved = await ToolResolver(sql_store).resolve([BareIdReference("s1"), BareIdReference("gone")])
        assert [s.name for s in resolved] == ["a"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, sql_store):
        assert await sql_store.get_tool_servers([]) == {}


# ==========================================================================
# Test: approvals
# ==========================================================================


class TestSqlApprovals:
    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_store):
        created = await sql_store.create_approval(ApprovalRecord(approval_id="ap-1", workflow_id="wf-1", message="ok?"))

        assert created.status is ApprovalStatus.PENDING
        fetched = await sql_store.get_approval("ap-1")
        assert fetched.message == "ok?"
        assert await sql_store.get_approval("nope") is None

    @pytest.mark.asyncio
    async def test_conditional_update(self, sql_store):
        await sql_store.create_approval(ApprovalRecord(approval_id="ap-1", workflow_id="wf-1"))

        updated = await sql_store.update_approval_status("ap-1", ApprovalStatus.APPROVED, responded_by="alice")
        assert updated.status is ApprovalStatus.APPROVED
        assert updated.responded_by == "alice"
        assert updated.responded_at is not None

        assert await sql_store.update_approval_status("ap-1", ApprovalStatus.REJECTED) is None
        assert await sql_store.update_approval_status("nope", ApprovalStatus.REJECTED) is None
        assert (await sql_store.get_approval("ap-1")).status is ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_gate_on_sql_store(self, sql_store):
        gate = ApprovalGate(sql_store)
        record = await gate.open("wf-1", execution_id="ex-1")
        await gate.respond(record.approval_id, "rejected")

        with pytest.raises(ApprovalStateError, match="already rejected"):
            await gate.respond(record.approval_id, "approved")

    @pytest.mark.asyncio
    async def test_list_filters(self, sql_store):
        for approval_id, workflow_id, execution_id in [("a", "wf-1", "ex-1"), ("b", "wf-1", "ex-2"), ("c", "wf-2", "ex-3")]:
            await sql_store.create_approval(
                ApprovalRecord(approval_id=approval_id, workflow_id=workflow_id, execution_id=execution_id)
            )
        await sql_store.update_approval_status("b", ApprovalStatus.APPROVED)

        assert [r.approval_id for r in await sql_store.list_approvals(workflow_id="wf-1")] == ["a", "b"]
        assert [r.approval_id for r in await sql_store.list_approvals(execution_id="ex-3")] == ["c"]
        pending = await sql_store.list_approvals(status=ApprovalStatus.PENDING)
        assert [r.approval_id for r in pending] == ["a", "c"]


# ==========================================================================
# Test: provider credentials
# ==========================================================================


class TestSqlCredentials:
    @pytest.mark.asyncio
    async def test_set_and_replace(self, sql_store):
        await sql_store.set_provider_key("u1", "openai", "sk-old")
        await sql_store.set_provider_key("u1", "openai", "sk-new")
        await sql_store.set_provider_key("u1", "firecrawl", "fc-1")
        await sql_store.set_provider_key("u2", "groq", "gsk")

        assert await sql_store.get_provider_credentials("u1") == {"openai": "sk-new", "firecrawl": "fc-1"}
        assert await sql_store.get_provider_credentials("nobody") == {}

    @pytest.mark.asyncio
    async def test_rotate_secrets(self, sql_store, session_factory, monkeypatch):
        old_key = settings.fernet_key
        await sql_store.set_provider_key("u1", "openai", "sk-1")
        await sql_store.add_tool_server(
            ToolServerConfig(name="search", url="https://search.example.com", auth_token="tool-token"), server_id="s1"
        )
        await sql_store.add_tool_server(ToolServerConfig(name="open", url="https://open.example.com"), server_id="s2")

        new_key = Fernet.generate_key().decode()
        monkeypatch.setattr(settings, "fernet_key", f"{new_key},{old_key}")
        reset_fernet()
        assert await sql_store.rotate_secrets() == 2

        # Old key retired: everything is still readable
        monkeypatch.setattr(settings, "fernet_key", new_key)
        reset_fernet()
        assert await sql_store.get_provider_credentials("u1") == {"openai": "sk-1"}
        assert (await sql_store.get_tool_servers(["s1"]))["s1"].auth_token == "tool-token"

    @pytest.mark.asyncio
    async def test_rotate_skips_unreadable_rows(self, sql_store, session_factory):
        async with session_factory() as session:
            session.add(ProviderKey(user_id="u1", provider="groq", encrypted_key=b"corrupted"))
            await session.commit()
        await sql_store.set_provider_key("u1", "openai", "sk-1")

        assert await sql_store.rotate_secrets() == 1
        assert await sql_store.get_provider_credentials("u1") == {"openai": "sk-1"}
