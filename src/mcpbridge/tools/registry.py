"""
Tool Registry - Central registry for all tools.

Tools are keyed by exposed name. Each entry carries an optional owner token so
a component can remove exactly the entries it created.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

from langchain_core.tools import BaseTool as LangChainBaseTool
from langchain_core.tools import StructuredTool
from loguru import logger

from mcpbridge.tools.base import BaseTool, ToolDefinition, ToolResult
from mcpbridge.tools.converter import build_args_model, to_openai_tool


class ToolRegistry:
    """
    Central registry for tools.

    Features:
    - Owner-tagged registration (first registration wins)
    - Uniform execution returning ToolResult
    - OpenAI and LangChain tool conversion
    """

    def __init__(self) -> None:
        self._tools: Dict[str, BaseTool] = {}
        self._owners: Dict[str, Optional[str]] = {}
        self._revision = 0

        # LangChain wrapper cache
        self._lc_cache_revision = -1
        self._lc_tool_cache: Dict[str, LangChainBaseTool] = {}

        logger.debug("ToolRegistry created")

    @property
    def revision(self) -> int:
        return int(self._revision)

    def _bump_revision(self) -> None:
        self._revision += 1
        self._lc_tool_cache.clear()
        self._lc_cache_revision = self._revision

    def register(self, tool: BaseTool, owner: Optional[str] = None) -> bool:
        """
        Register a tool under its definition name.

        Returns:
            True if added, False if the name is already taken
        """
        name = tool.definition.name
        if name in self._tools:
            current = self._owners.get(name)
            if owner is None or current != owner:
                logger.warning(
                    f"Tool name collision for '{name}' (owned by {current or 'host'}); skipping registration"
                )
            return False

        self._tools[name] = tool
        self._owners[name] = owner
        self._bump_revision()
        logger.debug(f"Registered tool: {name}")
        return True

    def unregister(self, name: str, owner: Optional[str] = None) -> bool:
        """Remove a tool. With an owner, only that owner's entry is removed."""
        if name not in self._tools:
            return False
        if owner is not None and self._owners.get(name) != owner:
            return False
        del self._tools[name]
        self._owners.pop(name, None)
        self._bump_revision()
        logger.debug(f"Unregistered tool: {name}")
        return True

    def get_tool(self, name: str) -> Optional[BaseTool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_owner(self, name: str) -> Optional[str]:
        return self._owners.get(name)

    def get_definition(self, name: str) -> Optional[ToolDefinition]:
        tool = self._tools.get(name)
        return tool.definition if tool else None

    def list_tools(self, *, owner: Optional[str] = None) -> List[ToolDefinition]:
        """List registered tool definitions, optionally only one owner's."""
        return [
            tool.definition
            for name, tool in self._tools.items()
            if owner is None or self._owners.get(name) == owner
        ]

    def tool_names(self) -> List[str]:
        return list(self._tools.keys())

    @property
    def tool_count(self) -> int:
        return len(self._tools)

    def clear(self) -> None:
        self._tools.clear()
        self._owners.clear()
        self._bump_revision()

    async def execute(self, name: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        """
        Execute a tool by name.

        Never raises for tool-level problems; unknown names and failures come
        back as a failed ToolResult.
        """
        tool = self._tools.get(name)
        if not tool:
            return ToolResult(success=False, error=f"Tool not found: {name}")
        return await tool.safe_execute(**(params or {}))

    def get_openai_tools(self) -> List[Dict[str, Any]]:
        """Get tools in OpenAI function-calling format."""
        return [to_openai_tool(tool.definition) for tool in self._tools.values()]

    def get_langchain_tools(self, *, allowlist: Optional[Set[str]] = None) -> List[LangChainBaseTool]:
        """
        Convert registered tools to LangChain tools, optionally filtered by allowlist.
        """
        if self._lc_cache_revision != self._revision:
            self._lc_tool_cache.clear()
            self._lc_cache_revision = self._revision

        wanted = set(allowlist) if allowlist is not None else set(self._tools.keys())
        out: List[LangChainBaseTool] = []

        for name in sorted(wanted):
            internal_tool = self._tools.get(name)
            if not internal_tool:
                continue

            cached = self._lc_tool_cache.get(name)
            if cached is not None:
                out.append(cached)
                continue

            lc_tool = self._to_langchain(internal_tool)
            self._lc_tool_cache[name] = lc_tool
            out.append(lc_tool)

        return out

    @staticmethod
    def _to_langchain(tool_ref: BaseTool) -> LangChainBaseTool:
        definition = tool_ref.definition

        async def executor(**kwargs):
            # LangChain passes unset optional fields as None.
            params = {k: v for k, v in kwargs.items() if v is not None}
            result = await tool_ref.safe_execute(**params)
            if result.success:
                return result.data
            return f"Error: {result.error}"

        def sync_executor(**kwargs):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return asyncio.run(executor(**kwargs))
            raise RuntimeError("Synchronous tool execution is not supported in an active event loop")

        return StructuredTool.from_function(
            func=sync_executor,
            coroutine=executor,
            name=definition.name,
            description=definition.description or definition.name,
            args_schema=build_args_model(definition),
        )
