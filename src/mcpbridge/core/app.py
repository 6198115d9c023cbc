"""
Application wiring for mcpbridge.

Builds the components in dependency order from application config and tears
them down in reverse.
"""

from typing import Optional, Union
from pathlib import Path

from loguru import logger

from mcpbridge.config.manager import ConfigManager
from mcpbridge.mcp.config import MCPConfigManager
from mcpbridge.mcp.connection import MCPConnectionManager
from mcpbridge.mcp.manager import MCPManager
from mcpbridge.mcp.models import ClientInfo
from mcpbridge.security.manager import SecurityManager
from mcpbridge.tools.registry import ToolRegistry


class MCPBridgeApp:
    """
    Coordinates configuration, permissions, the tool registry and the MCP
    manager for one host process.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None, *, config_dir: Optional[Union[str, Path]] = None):
        self._config_path = config_path
        self._config_dir_override = config_dir

        self.config: Optional[ConfigManager] = None
        self.security: Optional[SecurityManager] = None
        self.tools: Optional[ToolRegistry] = None
        self.mcp: Optional[MCPManager] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self, *, connect: bool = False) -> None:
        """
        Initialize all components in the correct order.

        Args:
            connect: Also enable every server whose config has enabled=true
        """
        logger.info("Starting mcpbridge...")

        # 1. Configuration
        self.config = ConfigManager(self._config_path, create_if_missing=False)
        await self.config.load()
        if self._config_dir_override:
            self.config.set("mcp.config_dir", str(self._config_dir_override))

        # 2. Server configs + permissions
        configs = MCPConfigManager(self.config.get("mcp.config_dir"))
        self.security = SecurityManager(
            configs,
            global_permissions=self.config.get("mcp.global_permissions", []),
            audit_log_path=self.config.get("security.audit_log_path"),
        )

        # 3. Registry + MCP
        self.tools = ToolRegistry()
        client = self.config.get("mcp.client", {}) or {}
        connections = MCPConnectionManager(
            client_info=ClientInfo(**client),
            startup_grace_seconds=float(self.config.get("mcp.startup_grace_seconds", 1.0)),
            health_check_timeout_seconds=float(self.config.get("mcp.health_check_timeout_seconds", 5.0)),
            restart_backoff_seconds=float(self.config.get("mcp.restart_backoff_seconds", 1.0)),
            spawn_timeout_seconds=float(self.config.get("mcp.spawn_timeout_seconds", 5.0)),
            request_timeout_seconds=float(self.config.get("mcp.request_timeout_seconds", 30.0)),
        )
        self.mcp = MCPManager(
            self.tools,
            config_manager=configs,
            connection_manager=connections,
            security=self.security,
        )
        await self.mcp.initialize()
        self._started = True

        if connect:
            await self.mcp.enable_configured_servers()

        logger.info(f"mcpbridge started ({len(configs.get_all_configs())} server config(s))")

    async def shutdown(self) -> None:
        """Shut down in reverse order."""
        logger.info("Shutting down mcpbridge...")
        if self.mcp:
            await self.mcp.cleanup()
        if self.tools:
            self.tools.clear()
        self._started = False
        logger.info("mcpbridge shutdown complete")

    async def __aenter__(self) -> "MCPBridgeApp":
        await self.startup()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
