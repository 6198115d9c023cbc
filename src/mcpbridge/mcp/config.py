"""
MCPConfigManager - per-server configuration files.

Every server lives in its own file (``<name>.json``, ``.yaml`` or ``.yml``)
inside one configuration directory. Saving rewrites the whole object back to
the server's file; removing a server deletes its file.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from loguru import logger
from pydantic import ValidationError

from mcpbridge.mcp.errors import InvalidConfigError
from mcpbridge.mcp.models import MCPServerConfig

DEFAULT_CONFIG_DIR = "~/.config/mcpbridge/mcp.d"
CONFIG_SUFFIXES = (".json", ".yaml", ".yml")


class MCPConfigManager:
    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        self._config_dir = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser()
        self._configs: Dict[str, MCPServerConfig] = {}
        self._sources: Dict[str, Path] = {}

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    def _read_file(self, path: Path) -> Dict[str, Any]:
        content = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
        if not isinstance(data, dict):
            raise ValueError("config must be a mapping/object")
        return data

    async def load_configs(self) -> List[MCPServerConfig]:
        """
        (Re)load every server file in the config directory.

        Files missing ``name`` or ``command``, or failing validation, are
        skipped with a warning naming the file.
        """
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._configs.clear()
        self._sources.clear()

        files = sorted(p for p in self._config_dir.iterdir() if p.is_file() and p.suffix.lower() in CONFIG_SUFFIXES)
        for path in files:
            try:
                data = self._read_file(path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load MCP config file {path.name}: {e}")
                continue

            if not data.get("name"):
                logger.warning(f"Skipping MCP config file {path.name}: missing 'name' field")
                continue
            if not data.get("command"):
                logger.warning(f"Skipping MCP config file {path.name}: missing 'command' field")
                continue

            try:
                config = MCPServerConfig.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping MCP config file {path.name}: {e.errors()[:1]}")
                continue

            if config.name in self._configs:
                logger.warning(
                    f"Skipping MCP config file {path.name}: server '{config.name}' "
                    f"already defined in {self._sources[config.name].name}"
                )
                continue

            self._configs[config.name] = config
            self._sources[config.name] = path

        logger.info(f"Loaded {len(self._configs)} MCP server config(s) from {self._config_dir}")
        return list(self._configs.values())

    def get_config(self, name: str) -> Optional[MCPServerConfig]:
        return self._configs.get(name)

    def get_all_configs(self) -> List[MCPServerConfig]:
        return list(self._configs.values())

    def get_config_path(self, name: str) -> Optional[Path]:
        return self._sources.get(name)

    def _path_for(self, name: str) -> Path:
        if name in self._sources:
            return self._sources[name]
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise InvalidConfigError(f"Invalid MCP server name for a config file: {name!r}", server=name)
        return self._config_dir / f"{name}.json"

    async def save_config(self, config: MCPServerConfig) -> Path:
        """Write the full config to its file (new servers get ``<name>.json``)."""
        path = self._path_for(config.name)
        self._config_dir.mkdir(parents=True, exist_ok=True)

        data = config.to_file_dict()
        if path.suffix.lower() == ".json":
            content = json.dumps(data, indent=2) + "\n"
        else:
            content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        path.write_text(content, encoding="utf-8")

        self._configs[config.name] = config
        self._sources[config.name] = path
        logger.debug(f"Saved MCP config '{config.name}' to {path}")
        return path

    async def update_config(self, name: str, **changes: Any) -> MCPServerConfig:
        current = self._configs.get(name)
        if current is None:
            raise InvalidConfigError(f"Unknown MCP server: {name}", server=name)
        updated = current.model_copy(update=changes)
        await self.save_config(updated)
        return updated

    async def remove_config(self, name: str) -> bool:
        """Delete the server's file. Returns False for unknown servers."""
        if name not in self._configs:
            return False

        path = self._sources.get(name) or self._path_for(name)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove config file for {name}: {e}")
            return False

        self._configs.pop(name, None)
        self._sources.pop(name, None)
        return True
