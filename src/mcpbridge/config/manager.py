"""
Configuration Manager - Application settings.

Handles YAML/JSON configuration with defaults and environment overrides.
Per-server MCP definitions live in their own directory (see mcp.config).
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from loguru import logger

DEFAULT_CONFIG_PATH = "~/.config/mcpbridge/config.yaml"


class ConfigManager:
    """
    Configuration manager for mcpbridge.

    Features:
    - YAML/JSON configuration files
    - Environment variable overrides
    - Change watchers
    - Default values
    """

    DEFAULT_CONFIG = {
        "app": {
            "name": "mcpbridge",
            "version": "0.1.0",
            "debug": False,
        },
        "mcp": {
            "config_dir": "~/.config/mcpbridge/mcp.d",
            "global_permissions": [],
            "request_timeout_seconds": 30.0,
            "startup_grace_seconds": 1.0,
            "spawn_timeout_seconds": 5.0,
            "health_check_timeout_seconds": 5.0,
            "restart_backoff_seconds": 1.0,
            "client": {
                "name": "mcpbridge",
                "title": "mcpbridge MCP Client",
                "version": "0.1.0",
            },
        },
        "security": {
            "audit_log_path": None,
        },
        "logging": {
            "level": "WARNING",
            "dir": None,
        },
    }

    def __init__(self, config_path: Optional[Union[str, Path]] = None, *, create_if_missing: bool = True):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to configuration file
            create_if_missing: Write the defaults when the file does not exist
        """
        self._config_path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser()
        self._create_if_missing = create_if_missing
        self._config: Dict[str, Any] = self._deep_copy(self.DEFAULT_CONFIG)
        self._watchers: List[Callable[[str, Any], None]] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._config_path

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Load configuration from file."""
        self._config = self._deep_copy(self.DEFAULT_CONFIG)

        if self._config_path.exists():
            try:
                content = self._config_path.read_text(encoding="utf-8")

                if self._config_path.suffix in [".yaml", ".yml"]:
                    file_config = yaml.safe_load(content) or {}
                else:
                    file_config = json.loads(content)

                if not isinstance(file_config, dict):
                    raise ValueError("top-level value must be a mapping")

                self._deep_merge(self._config, file_config)
                logger.info(f"Configuration loaded from {self._config_path}")

            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        elif self._create_if_missing:
            await self.save()
            logger.info("Created default configuration file")

        self._apply_env_overrides()

        self._loaded = True

    async def save(self) -> None:
        """Save configuration to file."""
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)

            if self._config_path.suffix in [".yaml", ".yml"]:
                content = yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False)
            else:
                content = json.dumps(self._config, indent=2)

            self._config_path.write_text(content, encoding="utf-8")
            logger.debug(f"Configuration saved to {self._config_path}")

        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "mcp.config_dir")
            default: Default value if not found
        """
        value = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dot-notation key and notify watchers."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if not isinstance(config.get(part), dict):
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

        for watcher in self._watchers:
            try:
                watcher(key, value)
            except Exception as e:
                logger.warning(f"Config watcher error: {e}")

    def watch(self, callback: Callable[[str, Any], None]) -> None:
        """Register a configuration change watcher."""
        self._watchers.append(callback)

    def unwatch(self, callback: Callable[[str, Any], None]) -> None:
        """Unregister a watcher."""
        if callback in self._watchers:
            self._watchers.remove(callback)

    def _apply_env_overrides(self) -> None:
        env_mappings = {
            "MCPBRIDGE_DEBUG": ("app.debug", lambda x: x.lower() in ("1", "true", "yes")),
            "MCPBRIDGE_CONFIG_DIR": ("mcp.config_dir", str),
            "MCPBRIDGE_LOG_LEVEL": ("logging.level", str.upper),
        }

        for env_var, (config_key, converter) in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                self.set(config_key, converter(value))
                logger.debug(f"Applied env override: {env_var}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        """Deep merge override into base dict."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        return obj

    @property
    def all(self) -> Dict[str, Any]:
        """Get all configuration."""
        return self._deep_copy(self._config)
