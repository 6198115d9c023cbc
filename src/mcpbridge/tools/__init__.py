"""Tools module - Host tool abstraction and registry."""

from mcpbridge.tools.base import BaseTool, ToolDefinition, ToolParameter, ToolResult
from mcpbridge.tools.registry import ToolRegistry

__all__ = ["BaseTool", "ToolDefinition", "ToolParameter", "ToolResult", "ToolRegistry"]
