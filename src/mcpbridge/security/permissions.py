"""
Wildcard permission rules.

Rules are strings such as "mcp__git__*", "allow:mcp__fs__read_*" or
"deny:mcp__fs__write_file". A bare pattern is an allow rule. Deny always wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence

ALLOW_PREFIX = "allow:"
DENY_PREFIX = "deny:"


@dataclass(frozen=True)
class PermissionRule:
    pattern: str
    allowed: bool

    def matches(self, name: str) -> bool:
        return match_wildcard(name, self.pattern)

    def __str__(self) -> str:
        return f"{ALLOW_PREFIX if self.allowed else DENY_PREFIX}{self.pattern}"


@lru_cache(maxsize=512)
def _compile(pattern: str) -> "re.Pattern[str]":
    # Escape everything, then turn the escaped '*' back into '.*'.
    return re.compile(re.escape(pattern).replace(r"\*", ".*"))


def match_wildcard(name: str, pattern: str) -> bool:
    """Anchored match where '*' stands for any run of characters (including none)."""
    if name == pattern:
        return True
    return _compile(pattern).fullmatch(name) is not None


def parse_rule(raw: str) -> PermissionRule:
    text = (raw or "").strip()
    if text.startswith(DENY_PREFIX):
        return PermissionRule(pattern=text[len(DENY_PREFIX):].strip(), allowed=False)
    if text.startswith(ALLOW_PREFIX):
        return PermissionRule(pattern=text[len(ALLOW_PREFIX):].strip(), allowed=True)
    return PermissionRule(pattern=text, allowed=True)


def parse_rules(raw_rules: Optional[Iterable[str]]) -> List[PermissionRule]:
    return [parse_rule(r) for r in (raw_rules or []) if r and str(r).strip()]


def evaluate(name: str, rules: Optional[Sequence[str]]) -> bool:
    """
    Evaluate a rule list for a qualified tool name.

    - No rules: allowed
    - Any matching deny rule: denied
    - Allow rules present: at least one must match
    - Only deny rules, none matching: allowed
    """
    parsed = parse_rules(rules)
    if not parsed:
        return True

    if any(not r.allowed and r.matches(name) for r in parsed):
        return False

    allow_rules = [r for r in parsed if r.allowed]
    if allow_rules:
        return any(r.matches(name) for r in allow_rules)
    return True


def is_allowed_by_any(name: str, patterns: Optional[Sequence[str]]) -> bool:
    if not patterns:
        return True
    return any(match_wildcard(name, p) for p in patterns)


def qualified_tool_name(server_name: str, tool_name: str, namespace: str = "mcp") -> str:
    return f"{namespace}__{server_name}__{tool_name}"
