"""
MCPProtocolHandler - newline-delimited JSON-RPC 2.0 over a byte stream pair.

Owns the pending-request map for one server process. Responses are matched
to requests purely by id; notifications fan out through an EventBus so the
read loop never waits on listeners.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger

from mcpbridge.core.events import EventBus, EventHandler, Subscription
from mcpbridge.mcp.errors import (
    ConnectionClosedError,
    MCPRequestError,
    MCPTimeoutError,
    NotConnectedError,
)
from mcpbridge.mcp.models import JSONRPC_VERSION

DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_FRAME_BYTES = 16 * 1024 * 1024

METHOD_NOT_FOUND = -32601


class ByteReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ByteWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    created_at: float = field(default_factory=time.monotonic)


class MCPProtocolHandler:
    def __init__(
        self,
        server_name: str = "",
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        read_chunk_size: int = 64 * 1024,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ) -> None:
        self.server_name = server_name
        self.request_timeout = float(request_timeout)
        self._chunk_size = int(read_chunk_size)
        self._max_frame_bytes = int(max_frame_bytes)

        self._reader: Optional[ByteReader] = None
        self._writer: Optional[ByteWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._buffer = bytearray()

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._events = EventBus()
        self._close_callbacks: List[Callable[[str], None]] = []

        self._attached = False
        self._closed = False
        self._close_reason: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._attached and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    def attach(self, reader: ByteReader, writer: ByteWriter) -> None:
        """Bind to a stream pair and start the read loop."""
        if self._closed:
            raise NotConnectedError("Protocol handler already closed", server=self.server_name)
        if self._attached:
            raise RuntimeError(f"Protocol handler for '{self.server_name}' is already attached")
        self._reader = reader
        self._writer = writer
        self._attached = True
        self._read_task = asyncio.create_task(self._read_loop(), name=f"mcp-read:{self.server_name}")

    def next_request_id(self) -> int:
        return next(self._ids)

    # ------------------------------------------------------------------ outbound

    def _encode(self, message: Dict[str, Any]) -> bytes:
        return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")

    def _write_nowait(self, message: Dict[str, Any]) -> None:
        if not self.is_connected or self._writer is None:
            raise NotConnectedError(f"MCP server '{self.server_name}' not connected", server=self.server_name)
        try:
            self._writer.write(self._encode(message))
        except (BrokenPipeError, ConnectionResetError, OSError, RuntimeError) as e:
            raise ConnectionClosedError(f"Write to '{self.server_name}' failed: {e}", server=self.server_name) from e

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for the response with the same id."""
        if not self.is_connected:
            raise NotConnectedError(f"MCP server '{self.server_name}' not connected", server=self.server_name)

        loop = asyncio.get_running_loop()
        rid = self.next_request_id()
        pending = PendingRequest(id=rid, method=method, future=loop.create_future())
        self._pending[rid] = pending

        timeout_s = self.request_timeout if timeout is None else float(timeout)
        if timeout_s > 0:
            pending.timer = loop.call_later(timeout_s, self._expire, rid, timeout_s)

        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": rid, "method": method}
        if params is not None:
            message["params"] = params

        try:
            self._write_nowait(message)
            await self._writer.drain()  # type: ignore[union-attr]
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            self._settle(rid, error=ConnectionClosedError(f"Write to '{self.server_name}' failed: {e}", server=self.server_name))
        except ConnectionClosedError as e:
            self._settle(rid, error=e)
        except BaseException:
            # Encoding failed (params not JSON-serializable) or the write was cancelled.
            self._discard(rid)
            raise

        try:
            return await pending.future
        except asyncio.CancelledError:
            self._discard(rid)
            raise

    def _discard(self, rid: int) -> None:
        dropped = self._pending.pop(rid, None)
        if dropped is None:
            return
        if dropped.timer:
            dropped.timer.cancel()
        if not dropped.future.done():
            dropped.future.cancel()

    def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Fire-and-forget; never waits for the stream to drain."""
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        self._write_nowait(message)

    # ------------------------------------------------------------------ settlement

    def _settle(self, rid: Any, *, result: Any = None, error: Optional[BaseException] = None) -> bool:
        pending = self._pending.pop(rid, None)
        if pending is None:
            return False
        if pending.timer:
            pending.timer.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _expire(self, rid: int, timeout_s: float) -> None:
        pending = self._pending.get(rid)
        if pending is None:
            return
        logger.warning(f"MCP request {rid} ({pending.method}) to '{self.server_name}' timed out after {timeout_s:g}s")
        self._settle(rid, error=MCPTimeoutError(pending.method, timeout_s, server=self.server_name))

    # ------------------------------------------------------------------ inbound

    async def _read_loop(self) -> None:
        reason = "stream ended"
        try:
            while True:
                chunk = await self._reader.read(self._chunk_size)  # type: ignore[union-attr]
                if not chunk:
                    break
                self._buffer.extend(chunk)
                await self._drain_buffer()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"read error: {e}"
            logger.error(f"MCP read loop for '{self.server_name}' failed: {e}")
        self.close(reason)

    async def _drain_buffer(self) -> None:
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                if len(self._buffer) > self._max_frame_bytes:
                    logger.warning(
                        f"Discarding oversized partial frame from '{self.server_name}' ({len(self._buffer)} bytes)"
                    )
                    self._buffer.clear()
                return
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            await self._handle_line(line)

    async def _handle_line(self, line: bytes) -> None:
        try:
            text = line.decode("utf-8").strip()
            if not text:
                return
            message = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
            logger.warning(f"Discarding malformed frame from '{self.server_name}': {str(e)[:200]}")
            return

        if not isinstance(message, dict):
            logger.warning(f"Discarding non-object frame from '{self.server_name}'")
            return

        has_id = message.get("id") is not None
        method = message.get("method")

        if isinstance(method, str):
            if has_id:
                self._handle_server_request(message)
            else:
                await self._events.emit(method, message.get("params") or {}, source=self.server_name)
            return

        if has_id and ("result" in message or "error" in message):
            self._handle_response(message)
            return

        logger.warning(f"Discarding unrecognized frame from '{self.server_name}'")

    def _handle_response(self, message: Dict[str, Any]) -> None:
        rid = message["id"]
        if rid not in self._pending and isinstance(rid, str) and rid.isdigit():
            rid = int(rid)

        if "error" in message and message["error"] is not None:
            err = message["error"]
            if isinstance(err, dict):
                error = MCPRequestError(
                    err.get("code"), str(err.get("message", "Unknown error")), err.get("data"), server=self.server_name
                )
            else:
                error = MCPRequestError(None, str(err), server=self.server_name)
            settled = self._settle(rid, error=error)
        else:
            settled = self._settle(rid, result=message.get("result"))

        if not settled:
            logger.debug(f"No pending request for response id {rid!r} from '{self.server_name}'")

    def _handle_server_request(self, message: Dict[str, Any]) -> None:
        rid = message["id"]
        method = message.get("method")
        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": rid, "result": {}}
        else:
            reply = {
                "jsonrpc": JSONRPC_VERSION,
                "id": rid,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        try:
            self._write_nowait(reply)
        except ConnectionClosedError as e:
            logger.debug(f"Could not answer server request {method} from '{self.server_name}': {e}")

    # ------------------------------------------------------------------ listeners

    def on_notification(self, method: str, handler: EventHandler) -> Subscription:
        """Subscribe to server notifications ('*' for all). Handlers get an Event."""
        return self._events.subscribe(method, handler)

    def add_close_callback(self, callback: Callable[[str], None]) -> None:
        self._close_callbacks.append(callback)

    def remove_close_callback(self, callback: Callable[[str], None]) -> None:
        if callback in self._close_callbacks:
            self._close_callbacks.remove(callback)

    # ------------------------------------------------------------------ teardown

    def close(self, reason: str = "disconnected") -> int:
        """
        Close the handler. Every outstanding request is rejected once with
        ConnectionClosedError.

        Returns:
            Number of pending requests rejected by this call
        """
        if self._closed:
            return 0
        self._closed = True
        self._close_reason = reason

        rejected = 0
        for rid in list(self._pending.keys()):
            err = ConnectionClosedError(f"MCP server '{self.server_name}' connection closed: {reason}", server=self.server_name)
            if self._settle(rid, error=err):
                rejected += 1
        self._buffer.clear()

        task = self._read_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

        if self._writer is not None:
            try:
                self._writer.close()
            except Exception as e:
                logger.debug(f"Closing writer for '{self.server_name}' failed: {e}")

        if rejected:
            logger.debug(f"Rejected {rejected} pending request(s) for '{self.server_name}': {reason}")

        for callback in list(self._close_callbacks):
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Close callback for '{self.server_name}' failed: {e}")
        return rejected
