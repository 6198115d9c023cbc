"""
MCPServerConnection - stdio MCP server process lifecycle.

Spawns one server process, performs the initialize handshake and tears the
process down on every exit path. MCPConnectionManager pools connections by
server name and adds health monitoring with auto-restart.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections import defaultdict
from contextlib import AsyncExitStack
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger
from pydantic import ValidationError

from mcpbridge.core.events import EventBus, EventHandler, Subscription
from mcpbridge.mcp.errors import (
    ConnectionClosedError,
    HandshakeFailedError,
    InvalidConfigError,
    MCPError,
    MCPRequestError,
    NotConnectedError,
    ServerDisabledError,
    SpawnError,
    SpawnTimeoutError,
)
from mcpbridge.mcp.models import (
    PROTOCOL_VERSION,
    ClientInfo,
    InitializeResult,
    MCPServerConfig,
    MCPServerHealth,
)
from mcpbridge.mcp.protocol import MCPProtocolHandler

CLIENT_CAPABILITIES: Dict[str, Any] = {
    "tools": {},
    "resources": {},
    "prompts": {},
    "sampling": {},
    "elicitation": {},
}


class MCPServerConnection:
    def __init__(
        self,
        config: MCPServerConfig,
        *,
        client_info: Optional[ClientInfo] = None,
        protocol_version: str = PROTOCOL_VERSION,
        startup_grace_seconds: float = 0.1,
        shutdown_timeout_seconds: float = 5.0,
        spawn_timeout_seconds: float = 5.0,
        request_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.config = config
        self._client_info = client_info or ClientInfo()
        self._protocol_version = protocol_version
        self._startup_grace_seconds = float(startup_grace_seconds)
        self._shutdown_timeout_seconds = float(shutdown_timeout_seconds)
        self._spawn_timeout_seconds = float(spawn_timeout_seconds)
        self._default_request_timeout = request_timeout_seconds

        self._stack: Optional[AsyncExitStack] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._protocol: Optional[MCPProtocolHandler] = None
        self._initialized = False
        self._started_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self._exit_callbacks: List[Callable[[str], None]] = []

        self.init_result: Optional[InitializeResult] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self._initialized and self._protocol is not None and self._protocol.is_connected

    @property
    def request_timeout(self) -> float:
        """Per-request timeout: the config's own timeout, else the pool default."""
        if "timeout" in self.config.model_fields_set or self._default_request_timeout is None:
            return self.config.timeout_seconds
        return float(self._default_request_timeout)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def protocol(self) -> Optional[MCPProtocolHandler]:
        return self._protocol

    @property
    def uptime_seconds(self) -> float:
        if self._started_at is None or not self.is_connected:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def pending_count(self) -> int:
        return self._protocol.pending_count if self._protocol else 0

    def _validate(self) -> None:
        cfg = self.config
        if not (cfg.command or "").strip():
            raise InvalidConfigError(f"MCP server '{cfg.name}' has no command configured", server=cfg.name)
        if not isinstance(cfg.args, list):
            raise InvalidConfigError(f"MCP server '{cfg.name}' args must be a list", server=cfg.name)
        if not cfg.enabled:
            raise ServerDisabledError(f"MCP server '{cfg.name}' is disabled", server=cfg.name)

    async def connect(self) -> None:
        async with self._lock:
            if self.is_connected:
                return
            if self._stack is not None:
                # Left over from a process that exited on its own.
                await self._teardown()

            self._validate()

            stack = AsyncExitStack()
            # Assign early so a cancellation can still be cleaned up via disconnect().
            self._stack = stack
            try:
                process = await self._spawn()
                self._process = process
                stack.push_async_callback(self._terminate_process, process)

                protocol = MCPProtocolHandler(self.name, request_timeout=self.request_timeout)
                protocol.attach(process.stdout, process.stdin)  # type: ignore[arg-type]
                stack.callback(protocol.close, "disconnected")
                self._protocol = protocol

                if process.stderr is not None:
                    stderr_task = asyncio.create_task(self._pump_stderr(process.stderr), name=f"mcp-stderr:{self.name}")
                    stack.callback(stderr_task.cancel)

                await self._wait_until_alive(process)
                await self._initialize(protocol)

                protocol.add_close_callback(self._on_protocol_closed)
                self._initialized = True
                self._started_at = time.monotonic()
            except BaseException:
                await self._teardown()
                raise

        info = self.init_result.server_info if self.init_result else None
        logger.info(
            f"Connected to MCP server '{self.name}'"
            + (f" ({info.name} {info.version})" if info and info.name else "")
        )

    async def _spawn(self) -> asyncio.subprocess.Process:
        cfg = self.config
        command_line = " ".join([cfg.command, *cfg.args])
        logger.info(f"Starting MCP server '{cfg.name}': {command_line}")
        env = {**os.environ, **cfg.env}
        spawn_timeout = min(self._spawn_timeout_seconds, cfg.timeout_seconds)
        try:
            return await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    cfg.command,
                    *cfg.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                ),
                timeout=spawn_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"MCP server '{cfg.name}' did not start within {spawn_timeout:g}s: {command_line}")
            raise SpawnTimeoutError(f"MCP server '{cfg.name}' spawn timed out", server=cfg.name) from e
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn MCP server '{cfg.name}' ({command_line}): {e}")
            raise SpawnError(f"Failed to spawn MCP server '{cfg.name}': {e}", server=cfg.name) from e

    async def _wait_until_alive(self, process: asyncio.subprocess.Process) -> None:
        if self._startup_grace_seconds > 0:
            await asyncio.sleep(self._startup_grace_seconds)
        if process.returncode is not None:
            logger.error(
                f"MCP server '{self.name}' exited immediately with code {process.returncode}: {self.config.command}"
            )
            raise SpawnError(
                f"MCP server '{self.name}' exited immediately with code {process.returncode}", server=self.name
            )

    async def _initialize(self, protocol: MCPProtocolHandler) -> None:
        params = {
            "protocolVersion": self._protocol_version,
            "capabilities": dict(CLIENT_CAPABILITIES),
            "clientInfo": self._client_info.model_dump(exclude_none=True),
        }
        try:
            raw = await protocol.send_request("initialize", params, timeout=self.request_timeout)
            self.init_result = InitializeResult.model_validate(raw if isinstance(raw, dict) else {})
            protocol.send_notification("notifications/initialized", {})
        except (MCPError, ValidationError) as e:
            raise HandshakeFailedError(f"MCP server '{self.name}' initialize failed: {e}", server=self.name) from e

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._shutdown_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"MCP server '{self.name}' ignored terminate, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        else:
            await process.wait()
        logger.debug(f"MCP server '{self.name}' process exited ({process.returncode})")

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        # Drain stderr so a chatty server never blocks on a full pipe.
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"[{self.name} stderr] {text}")

    def _on_protocol_closed(self, reason: str) -> None:
        self._initialized = False
        logger.warning(f"MCP server '{self.name}' connection lost: {reason}")
        for callback in list(self._exit_callbacks):
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Exit callback for '{self.name}' failed: {e}")

    async def _teardown(self) -> None:
        self._initialized = False
        self._started_at = None
        stack, self._stack = self._stack, None
        if self._protocol is not None:
            self._protocol.remove_close_callback(self._on_protocol_closed)
        try:
            if stack is not None:
                await stack.aclose()
        finally:
            self._protocol = None
            self._process = None

    async def disconnect(self) -> None:
        """Terminate the server. Safe to call any number of times."""
        if self._stack is None:
            self._initialized = False
            return
        await self._teardown()
        logger.info(f"Disconnected from MCP server '{self.name}'")

    async def __aenter__(self) -> "MCPServerConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def on_exit(self, callback: Callable[[str], None]) -> None:
        """Called with a reason when the server goes away without disconnect()."""
        self._exit_callbacks.append(callback)

    def remove_exit_callback(self, callback: Callable[[str], None]) -> None:
        if callback in self._exit_callbacks:
            self._exit_callbacks.remove(callback)

    def on_notification(self, method: str, handler: EventHandler) -> Subscription:
        if self._protocol is None:
            raise NotConnectedError(f"MCP server '{self.name}' not connected", server=self.name)
        return self._protocol.on_notification(method, handler)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        if not self._initialized or self._protocol is None:
            raise NotConnectedError(f"MCP server '{self.name}' not connected", server=self.name)
        return await self._protocol.send_request(method, params, timeout=timeout)

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if not self._initialized or self._protocol is None:
            raise NotConnectedError(f"MCP server '{self.name}' not connected", server=self.name)
        self._protocol.send_notification(method, params)

    async def ping(self, *, timeout: Optional[float] = None) -> Any:
        return await self.request("ping", timeout=timeout)


ConnectionFactory = Callable[..., MCPServerConnection]


class MCPConnectionManager:
    """
    Connection pool keyed by server name.

    Features:
    - Re-entrant connect (returns the live connection)
    - Health records and periodic ping checks
    - Auto-restart with linear backoff after failures or unexpected exits
    - Health events via on_health_event()
    """

    def __init__(
        self,
        *,
        client_info: Optional[ClientInfo] = None,
        startup_grace_seconds: float = 0.1,
        health_check_timeout_seconds: float = 5.0,
        restart_backoff_seconds: float = 1.0,
        spawn_timeout_seconds: float = 5.0,
        request_timeout_seconds: Optional[float] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self._client_info = client_info or ClientInfo()
        self._startup_grace_seconds = startup_grace_seconds
        self._health_check_timeout = float(health_check_timeout_seconds)
        self._restart_backoff = float(restart_backoff_seconds)
        self._spawn_timeout = float(spawn_timeout_seconds)
        self._request_timeout = request_timeout_seconds
        self._factory: ConnectionFactory = connection_factory or MCPServerConnection

        self._connections: Dict[str, MCPServerConnection] = {}
        self._configs: Dict[str, MCPServerConfig] = {}
        self._health: Dict[str, MCPServerHealth] = {}
        self._restart_counts: Dict[str, int] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._restart_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._events = EventBus()

    async def connect_server(self, config: MCPServerConfig) -> MCPServerConnection:
        name = config.name
        async with self._locks[name]:
            existing = self._connections.get(name)
            if existing is not None and existing.is_connected:
                return existing
            if existing is not None:
                self._connections.pop(name, None)
                await existing.disconnect()

            conn = self._factory(
                config,
                client_info=self._client_info,
                startup_grace_seconds=self._startup_grace_seconds,
                spawn_timeout_seconds=self._spawn_timeout,
                request_timeout_seconds=self._request_timeout,
            )
            self._configs[name] = config
            self._health.setdefault(
                name, MCPServerHealth(server_name=name, restart_count=self._restart_counts.get(name, 0))
            )

            try:
                await conn.connect()
            except Exception as e:
                self._update_health(name, "unhealthy", str(e))
                await conn.disconnect()
                raise

            self._connections[name] = conn
            conn.on_exit(lambda reason, n=name: self._handle_process_exit(n, reason))
            self._update_health(name, "healthy")

        if config.health_check_interval and config.health_check_interval > 0:
            self.start_health_monitoring(name, config.health_check_interval / 1000.0)
        return conn

    async def disconnect_server(self, name: str) -> None:
        self.stop_health_monitoring(name)
        task = self._restart_tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        self._configs.pop(name, None)
        conn = self._connections.pop(name, None)
        if conn is not None:
            await conn.disconnect()

        self._health.pop(name, None)
        self._restart_counts.pop(name, None)

    def get_connection(self, name: str) -> Optional[MCPServerConnection]:
        return self._connections.get(name)

    def is_connected(self, name: str) -> bool:
        conn = self._connections.get(name)
        return bool(conn and conn.is_connected)

    def get_connected_servers(self) -> List[str]:
        return [name for name in self._connections if self.is_connected(name)]

    async def cleanup(self) -> None:
        for name in list(set(self._connections) | set(self._configs)):
            await self.disconnect_server(name)

    # ------------------------------------------------------------------ health

    def on_health_event(self, handler: EventHandler, event_type: str = "*") -> Subscription:
        """Subscribe to healthy/unhealthy/restarting/restarted/restart_failed."""
        return self._events.subscribe(event_type, handler)

    async def _emit(self, event_type: str, name: str, **data: Any) -> None:
        await self._events.emit(event_type, {"server_name": name, **data}, source="mcp.connections")

    def _update_health(self, name: str, status: str, error: Optional[str] = None) -> None:
        conn = self._connections.get(name)
        self._health[name] = MCPServerHealth(
            server_name=name,
            status=status,  # type: ignore[arg-type]
            last_error=error,
            restart_count=self._restart_counts.get(name, 0),
            uptime_seconds=conn.uptime_seconds if conn else 0.0,
        )

    def get_server_health(self, name: str) -> Optional[MCPServerHealth]:
        return self._health.get(name)

    def get_all_server_health(self) -> List[MCPServerHealth]:
        return list(self._health.values())

    def get_restart_count(self, name: str) -> int:
        return self._restart_counts.get(name, 0)

    def reset_restart_count(self, name: str) -> None:
        self._restart_counts[name] = 0

    def get_server_uptime(self, name: str) -> float:
        conn = self._connections.get(name)
        return conn.uptime_seconds if conn else 0.0

    async def perform_health_check(self, name: str) -> MCPServerHealth:
        conn = self._connections.get(name)
        if conn is None or name not in self._health:
            return MCPServerHealth(server_name=name, status="unknown", restart_count=self._restart_counts.get(name, 0))

        try:
            await conn.ping(timeout=self._health_check_timeout)
        except MCPRequestError:
            # The server answered, it just does not implement ping.
            pass
        except (MCPError, asyncio.TimeoutError) as e:
            error = str(e) or "Health check timeout"
            logger.warning(f"Health check failed for MCP server '{name}': {error}")
            self._update_health(name, "unhealthy", error)
            await self._emit("unhealthy", name, error=error)
            config = self._configs.get(name)
            if config is not None and config.auto_restart:
                self._schedule_restart(name)
            return self._health[name]

        self._update_health(name, "healthy")
        await self._emit("healthy", name)
        return self._health[name]

    async def check_all_servers_health(self) -> List[MCPServerHealth]:
        results = []
        for name in list(self._connections):
            results.append(await self.perform_health_check(name))
        return results

    def start_health_monitoring(self, name: str, interval_seconds: float = 30.0) -> None:
        self.stop_health_monitoring(name)
        self._monitors[name] = asyncio.create_task(
            self._monitor_loop(name, float(interval_seconds)), name=f"mcp-health:{name}"
        )

    def stop_health_monitoring(self, name: str) -> None:
        task = self._monitors.pop(name, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _monitor_loop(self, name: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.perform_health_check(name)

    def _handle_process_exit(self, name: str, reason: str) -> None:
        config = self._configs.get(name)
        if config is None:
            return
        error = f"Process exited: {reason}"
        self._update_health(name, "unhealthy", error)
        task = asyncio.get_running_loop().create_task(self._emit("unhealthy", name, error=error))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        if config.auto_restart:
            self._schedule_restart(name)

    def _schedule_restart(self, name: str) -> None:
        running = self._restart_tasks.get(name)
        if running is not None and not running.done():
            return
        self._restart_tasks[name] = asyncio.get_running_loop().create_task(
            self._attempt_restart(name), name=f"mcp-restart:{name}"
        )

    async def _attempt_restart(self, name: str) -> bool:
        while True:
            config = self._configs.get(name)
            if config is None:
                return False

            max_attempts = config.max_restart_attempts
            attempt = self._restart_counts.get(name, 0) + 1
            if attempt > max_attempts:
                await self._emit("restart_failed", name, error=f"Max restart attempts ({max_attempts}) exceeded")
                return False

            self._restart_counts[name] = attempt
            self._update_health(name, "restarting")
            await self._emit("restarting", name, attempt=attempt)
            logger.info(f"Restarting MCP server '{name}' (attempt {attempt}/{max_attempts})")

            conn = self._connections.pop(name, None)
            if conn is not None:
                await conn.disconnect()

            await asyncio.sleep(self._restart_backoff * attempt)

            try:
                await self.connect_server(config)
            except Exception as e:
                self._update_health(name, "unhealthy", str(e))
                logger.warning(f"Restart of MCP server '{name}' failed: {e}")
                if attempt >= max_attempts:
                    await self._emit("restart_failed", name, error=str(e))
                    return False
                continue

            await self._emit("restarted", name)
            return True
