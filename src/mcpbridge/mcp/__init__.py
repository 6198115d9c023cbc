"""MCP module - stdio tool servers bridged into the host tool registry."""

from mcpbridge.mcp.config import MCPConfigManager
from mcpbridge.mcp.connection import MCPConnectionManager, MCPServerConnection
from mcpbridge.mcp.errors import (
    ConnectionClosedError,
    HandshakeFailedError,
    InvalidConfigError,
    MCPError,
    MCPRequestError,
    MCPTimeoutError,
    NotConnectedError,
    PermissionDeniedError,
    ServerDisabledError,
    SpawnError,
    SpawnTimeoutError,
)
from mcpbridge.mcp.manager import MCPManager
from mcpbridge.mcp.models import MCPServerConfig, MCPServerHealth, MCPServerTemplate, MCPTool
from mcpbridge.mcp.protocol import MCPProtocolHandler
from mcpbridge.mcp.tools import MCPToolManager

__all__ = [
    "ConnectionClosedError",
    "HandshakeFailedError",
    "InvalidConfigError",
    "MCPConfigManager",
    "MCPConnectionManager",
    "MCPError",
    "MCPManager",
    "MCPProtocolHandler",
    "MCPRequestError",
    "MCPServerConfig",
    "MCPServerConnection",
    "MCPServerHealth",
    "MCPServerTemplate",
    "MCPTimeoutError",
    "MCPTool",
    "MCPToolManager",
    "NotConnectedError",
    "PermissionDeniedError",
    "ServerDisabledError",
    "SpawnError",
    "SpawnTimeoutError",
]
