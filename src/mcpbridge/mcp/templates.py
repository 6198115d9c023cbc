"""
Built-in MCP server templates, loaded from the bundled templates.yaml.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from mcpbridge.mcp.models import MCPServerTemplate, TemplateCategory

TEMPLATES_FILE = Path(__file__).with_name("templates.yaml")

TEMPLATE_CATEGORIES: Tuple[str, ...] = ("filesystem", "git", "database", "api", "utility", "custom")


@lru_cache(maxsize=1)
def _load_templates() -> Tuple[MCPServerTemplate, ...]:
    data = yaml.safe_load(TEMPLATES_FILE.read_text(encoding="utf-8")) or []
    return tuple(MCPServerTemplate.model_validate(item) for item in data)


def get_all_templates() -> List[MCPServerTemplate]:
    return list(_load_templates())


def get_templates_by_category(category: TemplateCategory) -> List[MCPServerTemplate]:
    return [t for t in _load_templates() if t.category == category]


def get_template_by_id(template_id: str) -> Optional[MCPServerTemplate]:
    return next((t for t in _load_templates() if t.id == template_id), None)


def search_templates(query: str) -> List[MCPServerTemplate]:
    """Case-insensitive substring search over id, name and description."""
    q = (query or "").lower()
    return [
        t
        for t in _load_templates()
        if q in t.name.lower() or q in t.description.lower() or q in t.id.lower()
    ]


def get_template_categories() -> List[str]:
    return list(TEMPLATE_CATEGORIES)


def validate_template_env_vars(
    template: MCPServerTemplate, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, object]:
    """
    Check the template's required environment variables.

    Returns:
        {"valid": bool, "missing": [names]}
    """
    env = os.environ if environ is None else environ
    missing = [name for name in template.required_env_vars if not env.get(name)]
    return {"valid": not missing, "missing": missing}
