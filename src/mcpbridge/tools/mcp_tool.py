"""
MCPRemoteTool - expose an MCP server tool as a host tool.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

from mcpbridge.tools.base import BaseTool, ToolDefinition, ToolParameter, ToolResult

if TYPE_CHECKING:
    from mcpbridge.mcp.models import MCPTool
    from mcpbridge.mcp.tools import MCPToolManager


def flatten_mcp_content(content: Any) -> str:
    """Join the text of MCP content blocks; non-text blocks are stringified."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for block in list(content):
        if isinstance(block, dict):
            text = block.get("text")
            if isinstance(text, str):
                if text.strip():
                    parts.append(text.strip())
                continue
            kind = block.get("type", "unknown")
            parts.append(f"[{kind} content]")
            continue
        parts.append(str(block))
    return "\n".join(p for p in parts if p)


def exposed_tool_name(server_name: str, tool_name: str, prefix: str = "mcp") -> str:
    return f"{prefix}_{server_name}_{tool_name}"


class MCPRemoteTool(BaseTool):
    """A registered stand-in for one tool on one MCP server."""

    def __init__(
        self,
        manager: "MCPToolManager",
        mcp_tool: MCPTool,
        *,
        exposed_name: str,
        parameters: List[ToolParameter],
    ) -> None:
        self._manager = manager
        self.mcp_tool = mcp_tool
        self._definition = ToolDefinition(
            name=exposed_name,
            description=mcp_tool.description or mcp_tool.title or f"MCP tool {mcp_tool.name}",
            parameters=parameters,
            input_schema=mcp_tool.input_schema.model_dump(),
            metadata={
                "server_name": manager.server_name,
                "mcp_tool_name": mcp_tool.name,
                "title": mcp_tool.title,
            },
        )

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    @property
    def server_name(self) -> str:
        return self._manager.server_name

    @property
    def remote_name(self) -> str:
        return self.mcp_tool.name

    async def execute(self, **kwargs) -> ToolResult:
        arguments: Dict[str, Any] = dict(kwargs)
        return await self._manager.execute_tool(self.mcp_tool.name, arguments)
