"""
MCP Manager - one entry point for configured MCP servers.

Wires the config store, connection pool, permission gate and one
MCPToolManager per active server to a shared ToolRegistry.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from mcpbridge.mcp.config import MCPConfigManager
from mcpbridge.mcp.connection import MCPConnectionManager
from mcpbridge.mcp.errors import InvalidConfigError, MCPError
from mcpbridge.mcp.models import (
    MCPServerConfig,
    MCPServerHealth,
    MCPServerTemplate,
    MCPTool,
    MCPToolDocumentation,
    ToolParameterDoc,
)
from mcpbridge.mcp.templates import get_template_by_id
from mcpbridge.mcp.tools import MCPToolManager
from mcpbridge.security.manager import SecurityManager
from mcpbridge.tools.base import ToolResult
from mcpbridge.tools.registry import ToolRegistry

TEMPLATE_HEALTH_CHECK_INTERVAL_MS = 30000


class MCPManager:
    """
    Facade over the MCP subsystem.

    Usage:
        manager = MCPManager(registry, config_dir="~/.config/mcpbridge/mcp.d")
        await manager.initialize()
        await manager.enable_configured_servers()
        ...
        await manager.cleanup()
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        config_manager: Optional[MCPConfigManager] = None,
        connection_manager: Optional[MCPConnectionManager] = None,
        security: Optional[SecurityManager] = None,
        config_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        self.registry = registry
        self.configs = config_manager or MCPConfigManager(config_dir)
        self.connections = connection_manager or MCPConnectionManager()
        self.security = security or SecurityManager(self.configs)
        if self.security.configs is None:
            self.security.configs = self.configs
        self._tool_managers: Dict[str, MCPToolManager] = {}

    async def initialize(self) -> None:
        """Load server configurations from disk."""
        await self.configs.load_configs()

    def get_available_servers(self) -> List[MCPServerConfig]:
        return self.configs.get_all_configs()

    def is_server_enabled(self, name: str) -> bool:
        return name in self._tool_managers and self.connections.is_connected(name)

    def get_tool_manager(self, name: str) -> Optional[MCPToolManager]:
        return self._tool_managers.get(name)

    async def enable_server(self, name: str) -> List[str]:
        """
        Connect a configured server, discover its tools and register them.

        A config with enabled=false is switched on (and saved) first. On any
        failure the server is disconnected again and the error re-raised.

        Returns:
            Exposed names registered for this server
        """
        config = self.configs.get_config(name)
        if config is None:
            raise InvalidConfigError(f"MCP server '{name}' not found in configuration", server=name)

        existing = self._tool_managers.get(name)
        if existing is not None and self.connections.is_connected(name):
            return existing.registered_names

        if not config.enabled:
            config = await self.configs.update_config(name, enabled=True)

        tool_manager = existing or MCPToolManager(name, self.connections, self.registry, security=self.security)
        try:
            await self.connections.connect_server(config)
            await tool_manager.discover_tools()
            tool_manager.register_tools()
        except Exception as e:
            logger.error(f"Failed to enable MCP server '{name}': {e}")
            tool_manager.unregister_tools()
            self._tool_managers.pop(name, None)
            await self.connections.disconnect_server(name)
            raise

        self._tool_managers[name] = tool_manager
        return tool_manager.registered_names

    async def disable_server(self, name: str, *, persist: bool = False) -> None:
        """Unregister the server's tools, then stop it. Idempotent."""
        tool_manager = self._tool_managers.pop(name, None)
        if tool_manager is not None:
            tool_manager.unregister_tools()
        await self.connections.disconnect_server(name)

        config = self.configs.get_config(name)
        if persist and config is not None and config.enabled:
            await self.configs.update_config(name, enabled=False)

    async def enable_servers(self, names: Sequence[str]) -> Dict[str, List[str]]:
        """
        Enable several servers. Every server is attempted; failures are
        collected and raised together at the end.
        """
        registered: Dict[str, List[str]] = {}
        errors: List[str] = []
        for name in names:
            try:
                registered[name] = await self.enable_server(name)
            except Exception as e:
                errors.append(f"{name}: {e}")

        if errors:
            raise MCPError("Failed to enable some servers:\n" + "\n".join(errors))
        return registered

    async def enable_configured_servers(self) -> Dict[str, List[str]]:
        """Enable every server whose config has enabled=true."""
        return await self.enable_servers([c.name for c in self.configs.get_all_configs() if c.enabled])

    async def disable_all_servers(self) -> None:
        for name in list(self._tool_managers):
            await self.disable_server(name)

    def get_server_status(self) -> List[Dict[str, Any]]:
        status = []
        for config in self.configs.get_all_configs():
            tool_manager = self._tool_managers.get(config.name)
            status.append(
                {
                    "name": config.name,
                    "enabled": self.is_server_enabled(config.name),
                    "tools": tool_manager.registered_names if tool_manager else [],
                    "config": config,
                }
            )
        return status

    async def cleanup(self) -> None:
        await self.disable_all_servers()
        await self.connections.cleanup()
        self.security.shutdown()

    # ------------------------------------------------------------------ tools

    async def execute_server_tools(self, name: str, calls: Sequence[Dict[str, Any]]) -> List[ToolResult]:
        tool_manager = self._tool_managers.get(name)
        if tool_manager is None:
            return [
                ToolResult(success=False, error=f"MCP server '{name}' is not enabled", metadata={"server_name": name})
                for _ in calls
            ]
        return await tool_manager.execute_tools(calls)

    def get_all_registered_tools(self) -> List[Tuple[str, str, MCPTool]]:
        """(server_name, exposed_name, descriptor) for every registered MCP tool."""
        out: List[Tuple[str, str, MCPTool]] = []
        for server_name, tool_manager in self._tool_managers.items():
            for exposed in tool_manager.registered_names:
                tool = self.registry.get_tool(exposed)
                mcp_tool = getattr(tool, "mcp_tool", None)
                if mcp_tool is not None:
                    out.append((server_name, exposed, mcp_tool))
        return out

    def get_tool_documentation(self, tool_name: str) -> Optional[MCPToolDocumentation]:
        """Documentation for a tool by remote or exposed name (exact, then partial match)."""
        all_tools = self.get_all_registered_tools()

        match = next((t for t in all_tools if tool_name in (t[2].name, t[1])), None)
        if match is None:
            match = next(
                (t for t in all_tools if tool_name in t[2].name or tool_name in t[1] or t[2].name in tool_name),
                None,
            )
        if match is None:
            return None

        server_name, _, mcp_tool = match
        schema = mcp_tool.input_schema
        parameters = []
        for param_name, prop in schema.properties.items():
            prop = prop if isinstance(prop, dict) else {}
            description = prop.get("description")
            parameters.append(
                ToolParameterDoc(
                    name=param_name,
                    type=str(prop.get("type", "any")),
                    description=description if isinstance(description, str) and description else f"Parameter {param_name}",
                    required=param_name in schema.required,
                    default_value=prop.get("default"),
                )
            )

        return MCPToolDocumentation(
            tool_name=mcp_tool.name,
            server_name=server_name,
            description=mcp_tool.description or "No description available",
            parameters=parameters,
        )

    # ------------------------------------------------------------------ health

    def get_health_status(self) -> List[MCPServerHealth]:
        return self.connections.get_all_server_health()

    def get_server_health(self, name: str) -> Optional[MCPServerHealth]:
        return self.connections.get_server_health(name)

    async def check_health(self) -> List[MCPServerHealth]:
        return await self.connections.check_all_servers_health()

    # ------------------------------------------------------------------ templates

    async def add_server_from_template(self, template: MCPServerTemplate, name: Optional[str] = None) -> MCPServerConfig:
        """Save a disabled server config built from a template."""
        config = MCPServerConfig(
            name=name or template.id,
            description=template.description,
            command=template.command,
            args=list(template.args),
            env=dict(template.env),
            enabled=False,
            health_check_interval=TEMPLATE_HEALTH_CHECK_INTERVAL_MS,
            auto_restart=True,
            max_restart_attempts=3,
            permissions=list(template.permissions) or None,
        )
        await self.configs.save_config(config)
        logger.info(f"Added MCP server '{config.name}' from template '{template.id}'")
        return config

    def discover_relevant_servers(self, root: Optional[Union[str, Path]] = None) -> List[Tuple[MCPServerTemplate, str]]:
        """Suggest templates based on what the project directory contains."""
        base = Path(root or Path.cwd())
        checks: List[Tuple[str, bool, str]] = [
            ("git", (base / ".git").exists(), "Git repository detected"),
            (
                "filesystem-local",
                (base / "package.json").exists() or (base / "pyproject.toml").exists(),
                "Project manifest detected - filesystem access useful for code exploration",
            ),
            ("github", (base / ".github").exists(), "GitHub workflows detected - GitHub API integration available"),
            (
                "sqlite",
                any(any(base.glob(p)) for p in ("*.db", "*.sqlite", "*.sqlite3")),
                "SQLite database files detected",
            ),
            (
                "fetch",
                (base / "docker-compose.yml").exists() or (base / "docker-compose.yaml").exists(),
                "Docker Compose detected - web fetch useful for API testing",
            ),
            ("memory", True, "Knowledge graph memory for maintaining context across sessions"),
        ]

        suggestions = []
        for template_id, hit, reason in checks:
            template = get_template_by_id(template_id) if hit else None
            if template is not None:
                suggestions.append((template, reason))
        return suggestions
