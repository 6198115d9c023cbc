import asyncio
import sys
from pathlib import Path

import pytest

from mcpbridge.mcp.connection import MCPConnectionManager, MCPServerConnection
from mcpbridge.mcp.errors import (
    ConnectionClosedError,
    HandshakeFailedError,
    InvalidConfigError,
    MCPTimeoutError,
    NotConnectedError,
    ServerDisabledError,
    SpawnError,
    SpawnTimeoutError,
)
from mcpbridge.mcp.models import MCPServerConfig

FIXTURES = Path(__file__).resolve().parent / "fixtures"


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_connect_handshake_and_disconnect_leaves_no_process(scripted_config):
    conn = MCPServerConnection(scripted_config(), startup_grace_seconds=0.05)
    await conn.connect()
    process = conn.process
    try:
        assert conn.is_connected
        assert conn.pid == process.pid
        assert conn.init_result.server_info.name == "scripted"
        assert conn.init_result.instructions == "test server"
        assert conn.init_result.protocol_version == "2025-06-18"

        # connect() on a live connection is a no-op
        await conn.connect()
        assert conn.process is process

        listed = await conn.request("tools/list")
        assert [t["name"] for t in listed["tools"]][0] == "read"
        assert await conn.ping() == {}
    finally:
        await conn.disconnect()

    assert process.returncode is not None
    assert not conn.is_connected
    assert conn.pid is None
    await conn.disconnect()  # idempotent

    with pytest.raises(NotConnectedError):
        await conn.request("tools/list")


@pytest.mark.asyncio
async def test_context_manager_releases_process(scripted_config):
    async with MCPServerConnection(scripted_config(), startup_grace_seconds=0.05) as conn:
        process = conn.process
        assert conn.uptime_seconds >= 0
    assert process.returncode is not None


@pytest.mark.asyncio
async def test_invalid_and_disabled_configs_never_spawn(scripted_config):
    no_command = MCPServerConnection(MCPServerConfig(name="x", command="  ", enabled=True))
    with pytest.raises(InvalidConfigError):
        await no_command.connect()
    assert no_command.process is None

    disabled = MCPServerConnection(scripted_config(enabled=False))
    with pytest.raises(ServerDisabledError):
        await disabled.connect()
    assert disabled.process is None
    assert isinstance(ServerDisabledError("x"), InvalidConfigError)


@pytest.mark.asyncio
async def test_missing_binary_raises_spawn_error():
    config = MCPServerConfig(name="ghost", command="/nonexistent/mcp-server-binary", enabled=True)
    conn = MCPServerConnection(config)
    with pytest.raises(SpawnError):
        await conn.connect()
    assert not conn.is_connected


@pytest.mark.asyncio
async def test_server_that_exits_immediately_fails_to_connect(scripted_config):
    conn = MCPServerConnection(scripted_config(mode="exit_immediately"), startup_grace_seconds=1.0)
    with pytest.raises((SpawnError, HandshakeFailedError)):
        await conn.connect()
    assert conn.process is None
    assert not conn.is_connected


@pytest.mark.asyncio
async def test_initialize_error_tears_process_down(scripted_config):
    conn = MCPServerConnection(scripted_config(mode="init_error"), startup_grace_seconds=0.05)
    with pytest.raises(HandshakeFailedError) as exc_info:
        await conn.connect()
    assert "initialize refused" in str(exc_info.value)
    assert conn.process is None


@pytest.mark.asyncio
async def test_hanging_server_handshake_times_out():
    config = MCPServerConfig(
        name="hang",
        command=sys.executable,
        args=[str(FIXTURES / "hanging_mcp_server.py")],
        enabled=True,
        timeout=300,
    )
    conn = MCPServerConnection(config, startup_grace_seconds=0.05)
    with pytest.raises(HandshakeFailedError) as exc_info:
        await asyncio.wait_for(conn.connect(), timeout=10.0)
    assert isinstance(exc_info.value.__cause__, MCPTimeoutError)
    assert conn.process is None


@pytest.mark.asyncio
async def test_notifications_and_process_exit_callbacks(scripted_config):
    conn = MCPServerConnection(scripted_config(), startup_grace_seconds=0.05)
    await conn.connect()
    messages = []
    exits = []
    try:
        conn.on_notification("notifications/message", lambda event: messages.append(event.data))
        conn.on_exit(exits.append)

        await conn.request("tools/call", {"name": "notify", "arguments": {}})
        await wait_until(lambda: messages)
        assert messages[0]["data"] == "hi"

        with pytest.raises(ConnectionClosedError):
            await conn.request("tools/call", {"name": "crash", "arguments": {}})
        await wait_until(lambda: exits)
        assert not conn.is_connected
    finally:
        await conn.disconnect()


@pytest.mark.asyncio
async def test_manager_connect_is_reentrant_and_cleanup(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05)
    try:
        first = await manager.connect_server(scripted_config("a"))
        again = await manager.connect_server(scripted_config("a"))
        await manager.connect_server(scripted_config("b"))

        assert first is again
        assert sorted(manager.get_connected_servers()) == ["a", "b"]
        assert manager.get_server_health("a").status == "healthy"

        await manager.disconnect_server("a")
        await manager.disconnect_server("a")
        assert not manager.is_connected("a")
        assert manager.get_connection("a") is None
        assert manager.get_server_health("a") is None
    finally:
        await manager.cleanup()
    assert manager.get_connected_servers() == []


@pytest.mark.asyncio
async def test_health_check_treats_error_reply_as_alive(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05)
    events = []
    sub = manager.on_health_event(lambda event: events.append((event.name, event.data["server_name"])))
    try:
        await manager.connect_server(scripted_config("p", mode="no_ping"))
        health = await manager.perform_health_check("p")
        assert health.status == "healthy"
        results = await manager.check_all_servers_health()
        assert [h.server_name for h in results] == ["p"]
        await wait_until(lambda: ("healthy", "p") in events)
        assert (await manager.perform_health_check("unknown")).status == "unknown"
    finally:
        sub.unsubscribe()
        await manager.cleanup()


@pytest.mark.asyncio
async def test_unexpected_exit_triggers_auto_restart(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05, restart_backoff_seconds=0.01)
    events = []
    manager.on_health_event(lambda event: events.append(event.name))
    try:
        conn = await manager.connect_server(scripted_config("r"))
        conn.process.kill()

        await wait_until(lambda: "restarted" in events)
        assert events.index("unhealthy") < events.index("restarting") < events.index("restarted")
        replacement = manager.get_connection("r")
        assert replacement is not conn
        assert replacement.is_connected
        assert manager.get_restart_count("r") == 1
        assert manager.get_server_health("r").status == "healthy"

        manager.reset_restart_count("r")
        assert manager.get_restart_count("r") == 0
    finally:
        await manager.cleanup()


@pytest.mark.asyncio
async def test_restart_gives_up_after_max_attempts(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05, restart_backoff_seconds=0.01)
    events = []
    manager.on_health_event(lambda event: events.append(event.name))
    try:
        conn = await manager.connect_server(scripted_config("r", maxRestartAttempts=0))
        conn.process.kill()
        await wait_until(lambda: "restart_failed" in events)
        assert "restarted" not in events
    finally:
        await manager.cleanup()


@pytest.mark.asyncio
async def test_exit_without_auto_restart_marks_unhealthy(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05)
    try:
        conn = await manager.connect_server(scripted_config("n", autoRestart=False))
        conn.process.kill()
        await wait_until(lambda: manager.get_server_health("n").status == "unhealthy")
        assert "Process exited" in manager.get_server_health("n").last_error
        assert not manager.is_connected("n")
    finally:
        await manager.cleanup()


@pytest.mark.asyncio
async def test_periodic_health_monitoring(scripted_config):
    manager = MCPConnectionManager(startup_grace_seconds=0.05)
    events = []
    manager.on_health_event(lambda event: events.append(event.name), "healthy")
    try:
        await manager.connect_server(scripted_config("m", healthCheckInterval=20))
        await wait_until(lambda: len(events) >= 2)
        manager.stop_health_monitoring("m")
    finally:
        await manager.cleanup()


def test_request_timeout_prefers_the_server_config():
    implicit = MCPServerConfig(name="a", command="srv")
    explicit = MCPServerConfig(name="b", command="srv", timeout=1500)

    assert MCPServerConnection(implicit, request_timeout_seconds=7.0).request_timeout == 7.0
    assert MCPServerConnection(explicit, request_timeout_seconds=7.0).request_timeout == 1.5
    assert MCPServerConnection(implicit).request_timeout == 30.0

    loaded = MCPServerConfig.model_validate({"name": "c", "command": "srv", "timeout": 2000})
    assert MCPServerConnection(loaded, request_timeout_seconds=7.0).request_timeout == 2.0


@pytest.mark.asyncio
async def test_spawn_is_bounded_by_its_own_timeout(scripted_config):
    conn = MCPServerConnection(scripted_config(), spawn_timeout_seconds=0)
    with pytest.raises(SpawnTimeoutError):
        await conn.connect()
    assert conn.process is None
    assert not conn.is_connected


@pytest.mark.asyncio
async def test_pool_passes_timeouts_to_new_connections():
    seen = {}

    class RecordingConnection:
        def __init__(self, config, **kwargs):
            seen.update(kwargs)
            self.config = config
            self.is_connected = False

        async def connect(self):
            raise SpawnError("refused", server=self.config.name)

        async def disconnect(self):
            pass

    manager = MCPConnectionManager(
        spawn_timeout_seconds=2.0, request_timeout_seconds=7.0, connection_factory=RecordingConnection
    )
    with pytest.raises(SpawnError):
        await manager.connect_server(MCPServerConfig(name="x", command="srv", enabled=True))
    assert seen["spawn_timeout_seconds"] == 2.0
    assert seen["request_timeout_seconds"] == 7.0
    assert manager.get_server_health("x").status == "unhealthy"
    await manager.cleanup()
