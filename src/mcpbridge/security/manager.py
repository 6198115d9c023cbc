"""
Security Manager - Tool permission gate and audit logging.

Layers per-server permission rules over a global rule list and records every
decision in an audit log that is flushed to disk as JSON lines.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, Union

from loguru import logger

from mcpbridge.security.permissions import evaluate, qualified_tool_name

if TYPE_CHECKING:
    from mcpbridge.mcp.models import MCPServerConfig


class ServerConfigSource(Protocol):
    def get_config(self, name: str) -> Optional["MCPServerConfig"]: ...


class SecurityManager:
    """
    Permission evaluator for MCP tool calls.

    Features:
    - Server rules checked first, global rules second; both must pass
    - Audit log of allow/deny decisions
    """

    def __init__(
        self,
        configs: Optional[ServerConfigSource] = None,
        *,
        global_permissions: Optional[Sequence[str]] = None,
        namespace: str = "mcp",
        audit_log_path: Optional[Union[str, Path]] = None,
        audit_flush_threshold: int = 10,
    ):
        """
        Initialize security manager.

        Args:
            configs: Lookup for per-server configs (permission lists)
            global_permissions: Rules applied to every server
            namespace: Prefix of qualified tool names
            audit_log_path: Optional JSON-lines audit file
        """
        self.configs = configs
        self.namespace = namespace
        self._global_permissions: List[str] = list(global_permissions or [])
        self._audit_log: List[Dict[str, Any]] = []
        self._audit_file: Optional[Path] = Path(audit_log_path).expanduser() if audit_log_path else None
        self._audit_flush_threshold = max(int(audit_flush_threshold), 1)

    def set_global_permissions(self, permissions: Optional[Sequence[str]]) -> None:
        self._global_permissions = list(permissions or [])
        self._log_audit("global_permissions_set", {"permissions": list(self._global_permissions)})

    def get_global_permissions(self) -> List[str]:
        return list(self._global_permissions)

    def _server_permissions(self, server_name: str) -> Optional[List[str]]:
        if self.configs is None:
            return None
        config = self.configs.get_config(server_name)
        return config.permissions if config else None

    def is_tool_allowed(self, server_name: str, tool_name: str) -> bool:
        """Pure decision; does not touch the audit log."""
        full_name = qualified_tool_name(server_name, tool_name, self.namespace)

        server_rules = self._server_permissions(server_name)
        if server_rules and not evaluate(full_name, server_rules):
            return False

        if self._global_permissions and not evaluate(full_name, self._global_permissions):
            return False

        return True

    def check_tool(self, server_name: str, tool_name: str) -> bool:
        """Decide and record the decision."""
        allowed = self.is_tool_allowed(server_name, tool_name)
        full_name = qualified_tool_name(server_name, tool_name, self.namespace)
        self._log_audit(
            "tool_allowed" if allowed else "tool_denied",
            {"server": server_name, "tool": tool_name, "qualified_name": full_name},
        )
        if not allowed:
            logger.info(f"Permission denied for {full_name}")
        return allowed

    def filter_allowed_tools(self, server_name: str, tool_names: Sequence[str]) -> List[str]:
        return [t for t in tool_names if self.is_tool_allowed(server_name, t)]

    def _log_audit(self, event_type: str, data: Dict[str, Any]) -> None:
        event = {
            "timestamp": datetime.now().isoformat(),
            "type": event_type,
            "data": data,
        }
        self._audit_log.append(event)

        if self._audit_file and len(self._audit_log) >= self._audit_flush_threshold:
            self.flush_audit_log()

    def flush_audit_log(self) -> None:
        """Append buffered audit events to the audit file."""
        if not self._audit_file or not self._audit_log:
            return

        try:
            self._audit_file.parent.mkdir(parents=True, exist_ok=True)
            with self._audit_file.open("a", encoding="utf-8") as f:
                for event in self._audit_log:
                    f.write(json.dumps(event) + "\n")
            self._audit_log.clear()
        except OSError as e:
            logger.error(f"Failed to flush audit log: {e}")

    def get_audit_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent (unflushed) audit events."""
        return self._audit_log[-limit:]

    def shutdown(self) -> None:
        self.flush_audit_log()
