"""Security module - Tool permissions and audit logging."""

from mcpbridge.security.manager import SecurityManager
from mcpbridge.security.permissions import (
    PermissionRule,
    evaluate,
    is_allowed_by_any,
    match_wildcard,
    parse_rule,
    qualified_tool_name,
)

__all__ = [
    "PermissionRule",
    "SecurityManager",
    "evaluate",
    "is_allowed_by_any",
    "match_wildcard",
    "parse_rule",
    "qualified_tool_name",
]
