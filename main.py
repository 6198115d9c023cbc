"""
mcpbridge - MCP tool servers as permissioned host tools.

Main entry point; see `mcpbridge --help`.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from mcpbridge.cli import cli  # noqa: E402

if __name__ == "__main__":
    cli()
