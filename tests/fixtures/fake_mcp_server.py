"""
Tiny MCP stdio server built on the official SDK, for interoperability tests.

Run:
  python tests/fixtures/fake_mcp_server.py
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel

server = FastMCP("Fake MCP Server")


class AddResult(BaseModel):
    sum: int


@server.tool(description="Echo back the input text.")
def echo(text: str) -> str:
    return text


@server.tool(
    description="Add two integers and return structured content.",
    structured_output=True,
)
def add(a: int, b: int) -> AddResult:
    return AddResult(sum=int(a) + int(b))


def main() -> None:
    # Do not print to stdout; stdio transport uses it for protocol messages.
    server.run(transport="stdio")


if __name__ == "__main__":
    main()
