"""
MCP error taxonomy.

Transport and lifecycle failures are raised to the direct caller. Tool
invocation boundaries convert them into failed ToolResult values instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional


class MCPError(Exception):
    """Base class for all MCP client errors."""

    def __init__(self, message: str, *, server: Optional[str] = None) -> None:
        super().__init__(message)
        self.server = server


class InvalidConfigError(MCPError):
    """Server configuration cannot be used to connect (missing command/args)."""


class ServerDisabledError(InvalidConfigError):
    """Connect was attempted for a server whose config has enabled=false."""


class SpawnError(MCPError):
    """The OS refused to launch the server, or it died immediately."""


class SpawnTimeoutError(SpawnError):
    """The server process did not come up within the allotted time."""


class HandshakeFailedError(MCPError):
    """The initialize round-trip errored or timed out."""


class MCPTimeoutError(MCPError, asyncio.TimeoutError):
    """A single request exceeded its deadline. The connection stays usable."""

    def __init__(self, method: str, timeout: float, *, server: Optional[str] = None) -> None:
        super().__init__(f"MCP request timeout after {timeout:g}s: {method}", server=server)
        self.method = method
        self.timeout = timeout


class ConnectionClosedError(MCPError):
    """The process exited or its output stream ended."""


class NotConnectedError(ConnectionClosedError):
    """A call was made on a connection that is not (or no longer) open."""


class MCPRequestError(MCPError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: Any, message: str, data: Any = None, *, server: Optional[str] = None) -> None:
        super().__init__(f"MCP Error {code}: {message}", server=server)
        self.code = code
        self.error_message = message
        self.data = data


class PermissionDeniedError(MCPError):
    """The permission evaluator rejected a tool call."""

    def __init__(self, qualified_name: str, *, server: Optional[str] = None) -> None:
        super().__init__(f"Tool {qualified_name} is not permitted", server=server)
        self.qualified_name = qualified_name
