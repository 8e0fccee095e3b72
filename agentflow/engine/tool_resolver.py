"""Tool (MCP) server resolution.

Workflows reference tool servers either by id or, in older saves, by a full
inline configuration. References are classified once into
``BareIdReference`` / ``InlineToolConfig`` and resolved against the store at
call time, so executors always see the latest server configuration.

Ids with no matching record are dropped with a warning: a workflow saved with
a since-deleted tool must still run, just without that tool.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from agentflow.engine.types import BareIdReference, InlineToolConfig, ToolReference, ToolServerConfig

if TYPE_CHECKING:
    from agentflow.store.base import ExecutionStore

logger = logging.getLogger(__name__)

# "{FIRECRAWL_API_KEY}" -> credentials["firecrawl"]
_API_KEY_PLACEHOLDER_RE = re.compile(r"\{([A-Z0-9]+(?:_[A-Z0-9]+)*)_API_KEY\}")


def classify_tool_reference(raw: Any) -> ToolReference:
    """Turn one raw reference from node data into a tagged variant.

    Raises:
        ValueError: for shapes that are neither an id nor a server config.
    """
    if isinstance(raw, str):
        if not raw.strip():
            raise ValueError("Empty tool server id")
        return BareIdReference(server_id=raw.strip())
    if isinstance(raw, Mapping):
        if raw.get("url"):
            return InlineToolConfig(config=ToolServerConfig.from_mapping(raw))
        if raw.get("id"):
            return BareIdReference(server_id=str(raw["id"]))
    raise ValueError(f"Unsupported tool reference: {raw!r}")


def classify_tool_references(raw_refs: Iterable[Any]) -> list[ToolReference]:
    """Classify a list of raw references, skipping unusable entries."""
    refs: list[ToolReference] = []
    for raw in raw_refs:
        try:
            refs.append(classify_tool_reference(raw))
        except ValueError as e:
            logger.warning("Skipping tool reference: %s", e)
    return refs


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _merge_ids(existing: list, new: Iterable[str]) -> list:
    merged = list(existing)
    for server_id in new:
        if server_id not in merged:
            merged.append(server_id)
    return merged


def migrate_legacy_node_config(data: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Rewrite legacy tool fields into the canonical ``mcpServerIds`` list.

    - ``tools`` holding only ids moves to ``mcpServerIds``; ``tools`` holding
      full config objects is left alone.
    - ``mcpTools`` ids move to ``mcpServerIds``; inline configs stay in
      ``mcpTools`` (the key is removed once nothing is left).
    - A scalar ``mcpServerIds`` becomes a one-element list.

    Returns a new dict; the input is never mutated.
    """
    if data is None:
        return None

    migrated = dict(data)
    server_ids = _as_list(migrated.get("mcpServerIds"))

    mcp_tools = migrated.get("mcpTools")
    if isinstance(mcp_tools, list):
        ids = [t for t in mcp_tools if isinstance(t, str)]
        if ids:
            server_ids = _merge_ids(server_ids, ids)
            inline = [t for t in mcp_tools if not isinstance(t, str)]
            if inline:
                migrated["mcpTools"] = inline
            else:
                del migrated["mcpTools"]

    tools = migrated.get("tools")
    if isinstance(tools, list) and tools and all(isinstance(t, str) for t in tools):
        server_ids = _merge_ids(server_ids, tools)
        del migrated["tools"]

    if server_ids or "mcpServerIds" in migrated:
        migrated["mcpServerIds"] = server_ids
    return migrated


def apply_credentials(config: ToolServerConfig, credentials: Mapping[str, str] | None) -> ToolServerConfig:
    """Substitute ``{NAME_API_KEY}`` placeholders with the caller's credentials.

    The placeholder name maps to the lower-cased credential key, e.g.
    ``{FIRECRAWL_API_KEY}`` -> ``credentials["firecrawl"]``. Missing
    credentials become empty strings. Returns a new config; stored
    configurations are never rewritten.
    """
    credentials = credentials or {}

    def _sub(text: str) -> str:
        return _API_KEY_PLACEHOLDER_RE.sub(lambda m: credentials.get(m.group(1).lower(), ""), text)

    url = _sub(config.url)
    headers = {k: _sub(v) if isinstance(v, str) else v for k, v in config.headers.items()}
    if url == config.url and headers == dict(config.headers):
        return config
    return replace(config, url=url, headers=headers)


class ToolResolver:
    """Resolves tool references against the execution store."""

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def resolve(self, refs: Iterable[ToolReference]) -> list[ToolServerConfig]:
        """Resolve references in order, with one batch read for all ids.

        Store failures propagate; only unknown ids are tolerated.
        """
        refs = list(refs)
        ids = [ref.server_id for ref in refs if isinstance(ref, BareIdReference)]
        found = await self.store.get_tool_servers(ids) if ids else {}

        resolved: list[ToolServerConfig] = []
        for ref in refs:
            if isinstance(ref, InlineToolConfig):
                resolved.append(ref.config)
                continue
            config = found.get(ref.server_id)
            if config is None:
                logger.warning("Tool server %s not found, skipping", ref.server_id)
                continue
            resolved.append(config)
        return resolved

    async def resolve_one(self, server_id: str) -> ToolServerConfig | None:
        if not server_id:
            return None
        found = await self.store.get_tool_servers([server_id])
        return found.get(server_id)

    async def resolve_enabled(self, user_id: str) -> list[ToolServerConfig]:
        """Every enabled tool server of a user."""
        return await self.store.list_tool_servers(user_id, enabled_only=True)
