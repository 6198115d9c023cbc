import sys
from pathlib import Path

import pytest

FIXTURES = Path(__file__).resolve().parent / "fixtures"


def pytest_configure():
    # Ensure `src/` is on sys.path so `import mcpbridge` works without an editable install.
    root = Path(__file__).resolve().parent.parent
    src = root / "src"
    if src.exists():
        p = str(src)
        if p not in sys.path:
            sys.path.insert(0, p)


@pytest.fixture
def scripted_config():
    """Factory for configs that run the scripted JSON-RPC server."""
    from mcpbridge.mcp.models import MCPServerConfig

    def make(name: str = "fs", mode: str = "normal", **overrides) -> MCPServerConfig:
        data = {
            "name": name,
            "command": sys.executable,
            "args": [str(FIXTURES / "scripted_mcp_server.py")],
            "env": {"SCRIPTED_MODE": mode},
            "enabled": True,
            "timeout": 5000,
        }
        data.update(overrides)
        return MCPServerConfig.model_validate(data)

    return make
