"""
mcpbridge - MCP tool servers as permissioned host tools.

Spawns stdio MCP servers, performs the handshake, discovers their tools and
exposes them through a ToolRegistry behind wildcard permission rules.
"""

__version__ = "0.1.0"
__app_name__ = "mcpbridge"
