"""
MCPToolManager - discovers one server's tools and bridges them into a ToolRegistry.

execute_tool() is a result boundary: every failure (permission, transport,
server-reported) comes back as a failed ToolResult instead of an exception.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger
from pydantic import ValidationError

from mcpbridge.mcp.connection import MCPServerConnection
from mcpbridge.mcp.errors import MCPError, NotConnectedError, PermissionDeniedError
from mcpbridge.mcp.models import CallToolResult, MCPTool
from mcpbridge.security.manager import SecurityManager
from mcpbridge.security.permissions import qualified_tool_name
from mcpbridge.tools.base import ToolParameter, ToolResult
from mcpbridge.tools.mcp_tool import MCPRemoteTool, exposed_tool_name, flatten_mcp_content
from mcpbridge.tools.registry import ToolRegistry

_TYPE_MAP = {
    "number": "number",
    "integer": "number",
    "boolean": "boolean",
    "array": "array",
}


class ConnectionSource(Protocol):
    def get_connection(self, name: str) -> Optional[MCPServerConnection]: ...


def convert_mcp_parameters(tool: MCPTool) -> List[ToolParameter]:
    """Map an inputSchema onto host parameters (unknown types become string)."""
    schema = tool.input_schema
    required = set(schema.required)
    params: List[ToolParameter] = []
    for name, prop in schema.properties.items():
        prop = prop if isinstance(prop, dict) else {}
        raw_type = prop.get("type")
        if isinstance(raw_type, list):
            # e.g. ["integer", "null"]
            raw_type = next((t for t in raw_type if t != "null"), None)
        description = prop.get("description")
        params.append(
            ToolParameter(
                name=name,
                type=_TYPE_MAP.get(raw_type, "string") if isinstance(raw_type, str) else "string",  # type: ignore[arg-type]
                description=description if isinstance(description, str) and description else f"Parameter {name}",
                required=name in required,
                default=prop.get("default"),
            )
        )
    return params


class MCPToolManager:
    """
    Tool bridge for a single MCP server.

    Owns the registry entries it creates (tagged with an owner token) and
    removes only those on unregister_tools().
    """

    def __init__(
        self,
        server_name: str,
        connections: ConnectionSource,
        registry: ToolRegistry,
        *,
        security: Optional[SecurityManager] = None,
        name_prefix: str = "mcp",
    ) -> None:
        self.server_name = server_name
        self.connections = connections
        self.registry = registry
        self.security = security
        self.name_prefix = name_prefix
        self.owner = f"mcp:{server_name}:{uuid.uuid4().hex[:8]}"

        self._tools: Dict[str, MCPTool] = {}
        self._registered: List[str] = []

    @property
    def registered_names(self) -> List[str]:
        return list(self._registered)

    def get_tools(self) -> List[MCPTool]:
        return list(self._tools.values())

    def get_tool(self, tool_name: str) -> Optional[MCPTool]:
        return self._tools.get(tool_name)

    def _connection(self) -> MCPServerConnection:
        conn = self.connections.get_connection(self.server_name)
        if conn is None or not conn.is_connected:
            raise NotConnectedError(f"MCP server '{self.server_name}' not connected", server=self.server_name)
        return conn

    async def discover_tools(self) -> List[MCPTool]:
        """List the server's tools, replacing any previously discovered set."""
        conn = self._connection()
        discovered: Dict[str, MCPTool] = {}
        cursor: Optional[str] = None

        while True:
            params = {"cursor": cursor} if cursor else None
            result = await conn.request("tools/list", params)
            result = result if isinstance(result, dict) else {}

            for raw in result.get("tools") or []:
                try:
                    tool = MCPTool.model_validate(raw)
                except ValidationError as e:
                    logger.warning(f"Skipping invalid tool descriptor from '{self.server_name}': {e.errors()[:1]}")
                    continue
                discovered[tool.name] = tool

            next_cursor = result.get("nextCursor")
            if not next_cursor or next_cursor == cursor:
                break
            cursor = str(next_cursor)

        self._tools = discovered
        logger.info(f"Discovered {len(discovered)} tool(s) on MCP server '{self.server_name}'")
        return list(discovered.values())

    def register_tools(self) -> List[str]:
        """
        Register discovered tools into the shared registry.

        Returns:
            Exposed names newly registered by this call
        """
        added: List[str] = []
        for tool in self._tools.values():
            name = exposed_tool_name(self.server_name, tool.name, self.name_prefix)
            if name in self._registered and self.registry.get_owner(name) == self.owner:
                continue

            remote = MCPRemoteTool(self, tool, exposed_name=name, parameters=convert_mcp_parameters(tool))
            if self.registry.register(remote, owner=self.owner):
                self._registered.append(name)
                added.append(name)

        if added:
            logger.info(f"Registered {len(added)} tool(s) from MCP server '{self.server_name}'")
        return added

    def unregister_tools(self) -> int:
        removed = 0
        for name in self._registered:
            if self.registry.unregister(name, owner=self.owner):
                removed += 1
        self._registered.clear()
        if removed:
            logger.info(f"Unregistered {removed} tool(s) from MCP server '{self.server_name}'")
        return removed

    def _check_permission(self, tool_name: str) -> None:
        if self.security is not None and not self.security.check_tool(self.server_name, tool_name):
            raise PermissionDeniedError(
                qualified_tool_name(self.server_name, tool_name, self.security.namespace), server=self.server_name
            )

    async def execute_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        start_time = time.time()
        metadata: Dict[str, Any] = {"server_name": self.server_name, "tool_name": tool_name}

        def failed(error: str) -> ToolResult:
            return ToolResult(
                success=False,
                error=error,
                execution_time_ms=(time.time() - start_time) * 1000,
                metadata=metadata,
            )

        try:
            self._check_permission(tool_name)
            conn = self._connection()
            raw = await conn.request("tools/call", {"name": tool_name, "arguments": dict(arguments or {})})
        except (MCPError, asyncio.TimeoutError) as e:
            logger.debug(f"MCP tool {self.server_name}/{tool_name} failed: {e}")
            return failed(str(e) or type(e).__name__)
        except Exception as e:
            logger.warning(f"MCP tool {self.server_name}/{tool_name} could not be called: {e}")
            return failed(f"{type(e).__name__}: {e}")

        try:
            result = CallToolResult.model_validate(raw if isinstance(raw, dict) else {})
        except ValidationError as e:
            return failed(f"Malformed tools/call reply from '{self.server_name}': {e.errors()[:1]}")

        if result.structured_content is not None:
            metadata["structured_content"] = result.structured_content

        if result.is_error:
            return failed(result.first_text() or "Unknown error")

        return ToolResult(
            success=True,
            data=result.content,
            execution_time_ms=(time.time() - start_time) * 1000,
            metadata=metadata,
        )

    async def execute_tools(self, calls: Sequence[Dict[str, Any]]) -> List[ToolResult]:
        """Run calls in order; one failure does not stop the rest."""
        results: List[ToolResult] = []
        for call in calls:
            name = call.get("name") or call.get("tool") or ""
            results.append(await self.execute_tool(str(name), call.get("arguments") or {}))
        return results

    @staticmethod
    def format_tool_results(results: Sequence[ToolResult]) -> str:
        lines: List[str] = []
        for i, result in enumerate(results, 1):
            tool = result.metadata.get("tool_name", f"call {i}")
            if result.success:
                body = flatten_mcp_content(result.data) or "(no content)"
                lines.append(f"[{tool}] ok\n{body}")
            else:
                lines.append(f"[{tool}] error: {result.error}")
        return "\n\n".join(lines)
