import asyncio
from datetime import datetime

import pytest

from mcpbridge.mcp.errors import ConnectionClosedError, MCPRequestError, MCPTimeoutError
from mcpbridge.mcp.models import MCPServerConfig, MCPTool
from mcpbridge.mcp.protocol import MCPProtocolHandler
from mcpbridge.mcp.tools import MCPToolManager, convert_mcp_parameters
from mcpbridge.security.manager import SecurityManager
from mcpbridge.tools.base import ToolResult
from mcpbridge.tools.registry import ToolRegistry

READ_TOOL = {
    "name": "read",
    "description": "Read a file",
    "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
}


class FakeConnection:
    """Stands in for MCPServerConnection; replies come from a callable."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []
        self.is_connected = True

    async def request(self, method, params=None, *, timeout=None):
        self.calls.append((method, params))
        result = self.responder(method, params)
        if isinstance(result, BaseException):
            raise result
        return result


class FakePool:
    def __init__(self, **connections):
        self.connections = connections

    def get_connection(self, name):
        return self.connections.get(name)


def tools_list(*tools):
    def responder(method, params):
        if method == "tools/list":
            return {"tools": list(tools)}
        return {"content": [{"type": "text", "text": "hello"}], "isError": False}

    return responder


def test_convert_mcp_parameters_maps_types_and_required():
    tool = MCPTool.model_validate(
        {
            "name": "t",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "n": {"type": "integer", "description": "count"},
                    "x": {"type": "number"},
                    "flag": {"type": "boolean"},
                    "items": {"type": "array"},
                    "obj": {"type": "object"},
                    "maybe": {"type": ["integer", "null"]},
                    "untyped": {},
                },
                "required": ["n"],
            },
        }
    )
    params = {p.name: p for p in convert_mcp_parameters(tool)}

    assert params["n"].type == "number" and params["n"].required and params["n"].description == "count"
    assert params["x"].type == "number"
    assert params["flag"].type == "boolean"
    assert params["items"].type == "array"
    assert params["obj"].type == "string"
    assert params["maybe"].type == "number"
    assert params["untyped"].type == "string"
    assert params["untyped"].description == "Parameter untyped"
    assert not params["x"].required


@pytest.mark.asyncio
async def test_discover_and_register_end_to_end_read():
    conn = FakeConnection(tools_list(READ_TOOL))
    registry = ToolRegistry()
    manager = MCPToolManager("fs", FakePool(fs=conn), registry)

    await manager.discover_tools()
    added = manager.register_tools()

    assert added == ["mcp_fs_read"]
    assert registry.tool_count == 1
    definition = registry.get_definition("mcp_fs_read")
    assert "read" in definition.name
    (param,) = definition.parameters
    assert (param.name, param.type, param.required) == ("path", "string", True)

    result = await registry.execute("mcp_fs_read", {"path": "/tmp/x"})
    assert result.success is True
    assert result.data == [{"type": "text", "text": "hello"}]
    assert conn.calls[-1] == ("tools/call", {"name": "read", "arguments": {"path": "/tmp/x"}})


@pytest.mark.asyncio
async def test_register_tools_is_idempotent():
    conn = FakeConnection(tools_list(READ_TOOL))
    registry = ToolRegistry()
    manager = MCPToolManager("fs", FakePool(fs=conn), registry)

    await manager.discover_tools()
    assert manager.register_tools() == ["mcp_fs_read"]
    assert manager.register_tools() == []
    assert registry.tool_count == 1

    # rediscovery replaces the descriptor set but does not duplicate entries
    await manager.discover_tools()
    assert manager.register_tools() == []
    assert registry.tool_count == 1


@pytest.mark.asyncio
async def test_collision_with_other_owner_is_skipped():
    registry = ToolRegistry()
    first = MCPToolManager("fs", FakePool(fs=FakeConnection(tools_list(READ_TOOL))), registry)
    second = MCPToolManager("fs", FakePool(fs=FakeConnection(tools_list(READ_TOOL))), registry)

    await first.discover_tools()
    await second.discover_tools()
    assert first.register_tools() == ["mcp_fs_read"]
    assert second.register_tools() == []
    assert registry.get_owner("mcp_fs_read") == first.owner

    # the loser cannot remove the winner's entry
    assert second.unregister_tools() == 0
    assert registry.has_tool("mcp_fs_read")
    assert first.unregister_tools() == 1
    assert registry.tool_count == 0


@pytest.mark.asyncio
async def test_discover_follows_pagination_and_skips_invalid_descriptors():
    pages = {
        None: {"tools": [READ_TOOL, {"description": "no name"}], "nextCursor": "p2"},
        "p2": {"tools": [{"name": "write"}]},
    }

    def responder(method, params):
        return pages[(params or {}).get("cursor")]

    manager = MCPToolManager("fs", FakePool(fs=FakeConnection(responder)), ToolRegistry())
    tools = await manager.discover_tools()
    assert [t.name for t in tools] == ["read", "write"]


@pytest.mark.asyncio
async def test_execute_maps_error_flag_to_failed_result():
    def responder(method, params):
        return {"content": [{"type": "image", "data": "..."}, {"type": "text", "text": "denied by server"}], "isError": True}

    manager = MCPToolManager("fs", FakePool(fs=FakeConnection(responder)), ToolRegistry())
    result = await manager.execute_tool("read", {"path": "/x"})
    assert result == ToolResult(
        success=False,
        error="denied by server",
        execution_time_ms=result.execution_time_ms,
        metadata={"server_name": "fs", "tool_name": "read"},
    )

    manager_no_text = MCPToolManager(
        "fs", FakePool(fs=FakeConnection(lambda m, p: {"content": [], "isError": True})), ToolRegistry()
    )
    assert (await manager_no_text.execute_tool("read", {})).error == "Unknown error"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure,fragment",
    [
        (MCPTimeoutError("tools/call", 0.1, server="fs"), "timeout"),
        (ConnectionClosedError("connection closed", server="fs"), "closed"),
        (MCPRequestError(-32602, "Unknown tool: nope", server="fs"), "Unknown tool"),
    ],
)
async def test_execute_never_raises_on_transport_failure(failure, fragment):
    manager = MCPToolManager("fs", FakePool(fs=FakeConnection(lambda m, p: failure)), ToolRegistry())
    result = await manager.execute_tool("read", {})
    assert result.success is False
    assert fragment in result.error


@pytest.mark.asyncio
async def test_execute_malformed_reply_and_missing_connection():
    manager = MCPToolManager(
        "fs", FakePool(fs=FakeConnection(lambda m, p: {"content": "not-a-list"})), ToolRegistry()
    )
    malformed = await manager.execute_tool("read", {})
    assert not malformed.success and "Malformed" in malformed.error

    orphan = MCPToolManager("gone", FakePool(), ToolRegistry())
    result = await orphan.execute_tool("read", {})
    assert not result.success and "not connected" in result.error


@pytest.mark.asyncio
async def test_structured_content_goes_to_metadata():
    def responder(method, params):
        return {"content": [{"type": "text", "text": "{}"}], "structuredContent": {"sum": 5}}

    manager = MCPToolManager("calc", FakePool(calc=FakeConnection(responder)), ToolRegistry())
    result = await manager.execute_tool("add", {"a": 2, "b": 3})
    assert result.success
    assert result.metadata["structured_content"] == {"sum": 5}


@pytest.mark.asyncio
async def test_permission_denial_happens_before_any_traffic():
    conn = FakeConnection(tools_list(READ_TOOL))
    config = MCPServerConfig(name="fs", command="tool-server", permissions=["deny:mcp__fs__read"])

    class Configs:
        def get_config(self, name):
            return config if name == "fs" else None

    security = SecurityManager(Configs())
    manager = MCPToolManager("fs", FakePool(fs=conn), ToolRegistry(), security=security)

    result = await manager.execute_tool("read", {"path": "/x"})
    assert result.success is False
    assert "mcp__fs__read" in result.error
    assert conn.calls == []
    assert security.get_audit_log()[-1]["type"] == "tool_denied"


@pytest.mark.asyncio
async def test_execute_tools_continues_after_failures_and_formats():
    def responder(method, params):
        if params["name"] == "bad":
            return MCPTimeoutError("tools/call", 0.1, server="fs")
        return {"content": [{"type": "text", "text": f"ran {params['name']}"}]}

    manager = MCPToolManager("fs", FakePool(fs=FakeConnection(responder)), ToolRegistry())
    results = await manager.execute_tools([{"name": "a"}, {"name": "bad"}, {"name": "c", "arguments": {"k": 1}}])

    assert [r.success for r in results] == [True, False, True]
    text = MCPToolManager.format_tool_results(results)
    assert "[a] ok\nran a" in text
    assert "[bad] error:" in text
    assert "ran c" in text


@pytest.mark.asyncio
async def test_concurrent_calls_are_independent():
    order = []

    class SlowConnection(FakeConnection):
        async def request(self, method, params=None, *, timeout=None):
            delay = params["arguments"]["delay"]
            await asyncio.sleep(delay)
            order.append(params["name"])
            return {"content": [{"type": "text", "text": params["name"]}]}

    manager = MCPToolManager("fs", FakePool(fs=SlowConnection(None)), ToolRegistry())
    slow, fast = await asyncio.gather(
        manager.execute_tool("slow", {"delay": 0.05}),
        manager.execute_tool("fast", {"delay": 0.0}),
    )
    assert order == ["fast", "slow"]
    assert slow.data[0]["text"] == "slow" and fast.data[0]["text"] == "fast"


class SilentWriter:
    def write(self, data):
        pass

    async def drain(self):
        pass

    def close(self):
        pass


class ProtocolConnection:
    """Real protocol handler over an in-memory stream that never answers."""

    def __init__(self):
        self.protocol = MCPProtocolHandler("fs", request_timeout=5.0)
        self.protocol.attach(asyncio.StreamReader(), SilentWriter())
        self.is_connected = True

    async def request(self, method, params=None, *, timeout=None):
        return await self.protocol.send_request(method, params, timeout=timeout)


@pytest.mark.asyncio
async def test_unserializable_or_non_mapping_arguments_become_failed_results():
    conn = ProtocolConnection()
    manager = MCPToolManager("fs", FakePool(fs=conn), ToolRegistry())
    try:
        result = await manager.execute_tool("read", {"when": datetime(2020, 1, 1)})
        assert result.success is False
        assert "TypeError" in result.error
        assert conn.protocol.pending_count == 0

        bad_args = await manager.execute_tool("read", [1, 2])
        assert bad_args.success is False
        assert bad_args.metadata["tool_name"] == "read"
    finally:
        assert conn.protocol.close() == 0


def test_convert_tolerates_non_string_schema_fields():
    tool = MCPTool.model_validate(
        {
            "name": "odd",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "p": {"type": "string", "description": 5},
                    "q": {"type": {"anyOf": ["string"]}, "description": ["x"]},
                    "r": {"type": [["nested"], "null"]},
                },
            },
        }
    )
    params = {p.name: p for p in convert_mcp_parameters(tool)}
    assert params["p"].description == "Parameter p"
    assert (params["q"].type, params["q"].description) == ("string", "Parameter q")
    assert params["r"].type == "string"
