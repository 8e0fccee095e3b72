"""Agent node data as saved by the workflow editor (camelCase keys)."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentNodeData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instructions: str = ""
    model: str = ""
    output_format: str = Field("text", alias="outputFormat")
    include_chat_history: bool = Field(False, alias="includeChatHistory")
    node_name: str = Field("", alias="nodeName")
    mcp_server_ids: list[str] = Field(default_factory=list, alias="mcpServerIds")
    mcp_tools: list[Any] = Field(default_factory=list, alias="mcpTools")
    tools: list[Any] = Field(default_factory=list)

    @field_validator("output_format", mode="before")
    @classmethod
    def _lower_format(cls, value: Any) -> str:
        # Older saves use "JSON" / "Text"
        return str(value or "text").lower()

    @field_validator("instructions", "model", "node_name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("mcp_server_ids", mode="before")
    @classmethod
    def _ids_to_str(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        return [str(v) for v in value if isinstance(v, (str, int))]

    @field_validator("mcp_tools", "tools", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def inline_tool_configs(self) -> list[dict]:
        """Tool entries that carry their own configuration."""
        return [t for t in [*self.mcp_tools, *self.tools] if isinstance(t, dict)]
