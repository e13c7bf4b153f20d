"""
Stdio tool-server manager.

Runs external tool-providing processes and talks to them over stdin/stdout
using newline-delimited JSON-RPC 2.0 (one JSON object per line), the same
framing ``toolrelay.mcp_server`` speaks on the other end.

Each running process gets a ``StdioServerHandle`` and exactly one reader
task. The reader turns stdout into a stream of parsed messages and fulfils
waiters by correlation id; lines that are not JSON (diagnostic output) are
dropped. Requests carry their own timeout, independent of the handshake
timeout, and concurrent requests on one handle may complete in any order.

Usage
-----
    manager = StdioServerManager()
    await manager.start_server("fs", "npx", ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"])
    tools = await manager.list_tools("fs")
    result = await manager.call_tool("fs", "list_directory", {"path": "/tmp"})
    await manager.stop_server("fs")
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Mapping, Sequence

from .tools.errors import ToolConfigError, ToolProcessError, ToolRequestError, ToolServerError, ToolTimeoutError

log = logging.getLogger("toolrelay.stdio")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolrelay", "version": "1.0.0"}
HANDSHAKE_TIMEOUT = 10.0
REQUEST_TIMEOUT = 30.0
_READ_CHUNK = 65536
_MAX_LINE_BYTES = 16 * 1024 * 1024
_STOP_GRACE = 2.0


@dataclass(frozen=True)
class StartResult:
    server_id: str
    already_running: bool = False
    protocol_version: str = ""
    capabilities: dict[str, Any] = field(default_factory=dict)
    server_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StopResult:
    server_id: str
    already_stopped: bool = False


class StdioServerHandle:
    def __init__(self, server_id: str, process: asyncio.subprocess.Process) -> None:
        self.server_id = server_id
        self.process = process
        self.pending_calls: dict[int, asyncio.Future[Any]] = {}
        self.next_id = 1
        self.initialized = False
        self.handshake: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self.init_id: int | None = None
        self.reader_task: asyncio.Task[None] | None = None
        self.stderr_task: asyncio.Task[None] | None = None

    def allocate_id(self) -> int:
        msg_id = self.next_id
        self.next_id += 1
        return msg_id

    def write(self, message: Mapping[str, Any]) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise ToolProcessError(f"Stdio server {self.server_id} stdin is closed", exit_code=self.process.returncode)
        stdin.write((json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8"))

    async def flush(self) -> None:
        if self.process.stdin is None:
            return
        try:
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ToolProcessError(
                f"Stdio server {self.server_id} closed its input: {exc}",
                exit_code=self.process.returncode,
            ) from exc

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield each complete stdout line that parses as a JSON object."""
        stdout = self.process.stdout
        if stdout is None:
            return
        buffer = b""
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for raw in lines:
                message = _parse_line(raw)
                if message is not None:
                    yield message
            if len(buffer) > _MAX_LINE_BYTES:
                log.warning("[%s] dropping oversized stdout line (%d bytes)", self.server_id, len(buffer))
                buffer = b""
        message = _parse_line(buffer)
        if message is not None:
            yield message


def _parse_line(raw: bytes) -> dict[str, Any] | None:
    line = raw.strip()
    if not line:
        return None
    try:
        message = json.loads(line.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None


def _consume_outcome(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


def _error_message(error: Any) -> tuple[str, int | None]:
    if isinstance(error, dict):
        code = error.get("code")
        return str(error.get("message") or error), code if isinstance(code, int) else None
    return str(error), None


class StdioServerManager:
    """Owns every running stdio server handle for one host process."""

    def __init__(
        self,
        *,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        client_info: Mapping[str, Any] | None = None,
    ) -> None:
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.client_info = dict(client_info or CLIENT_INFO)
        self._handles: dict[str, StdioServerHandle] = {}
        self._starting: dict[str, asyncio.Future[StartResult]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_running(self, server_id: str) -> bool:
        handle = self._handles.get(server_id)
        return handle is not None and handle.initialized

    def running(self) -> list[str]:
        return sorted(sid for sid, h in self._handles.items() if h.initialized)

    async def start_server(
        self,
        server_id: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> StartResult:
        existing = self._handles.get(server_id)
        if existing is not None and existing.initialized:
            return self._start_result(server_id, existing.handshake.result(), already_running=True)
        in_flight = self._starting.get(server_id)
        if in_flight is not None:
            # Start already in flight for this id.
            result = await asyncio.shield(in_flight)
            return replace(result, already_running=True)

        starting: asyncio.Future[StartResult] = asyncio.get_running_loop().create_future()
        starting.add_done_callback(_consume_outcome)
        self._starting[server_id] = starting
        try:
            result = await self._spawn(server_id, command, args, env)
        except asyncio.CancelledError:
            starting.cancel()
            raise
        except Exception as exc:
            starting.set_exception(exc)
            raise
        else:
            starting.set_result(result)
            return result
        finally:
            if self._starting.get(server_id) is starting:
                del self._starting[server_id]

    async def _spawn(
        self,
        server_id: str,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str] | None,
    ) -> StartResult:
        merged_env = {**os.environ, **{str(k): str(v) for k, v in (env or {}).items()}}
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *[str(a) for a in args],
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                start_new_session=True,
            )
        except OSError as exc:
            log.error("[%s] spawn failed: %s", server_id, exc)
            raise ToolProcessError(f"Failed to start stdio server {server_id}: {exc}") from exc

        handle = StdioServerHandle(server_id, process)
        self._handles[server_id] = handle
        handle.reader_task = asyncio.create_task(self._read_loop(handle), name=f"stdio-read-{server_id}")
        handle.stderr_task = asyncio.create_task(self._drain_stderr(handle), name=f"stdio-stderr-{server_id}")
        log.info("[%s] spawned pid=%s: %s %s", server_id, process.pid, command, " ".join(map(str, args)))

        handle.init_id = handle.allocate_id()
        try:
            handle.write(
                {
                    "jsonrpc": "2.0",
                    "id": handle.init_id,
                    "method": "initialize",
                    "params": {
                        "protocolVersion": PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": self.client_info,
                    },
                }
            )
            await handle.flush()
            result = await asyncio.wait_for(asyncio.shield(handle.handshake), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            error = ToolTimeoutError(
                f"Stdio server {server_id} did not complete initialize within {self.handshake_timeout:g}s"
            )
            if not handle.handshake.done():
                handle.handshake.set_exception(error)
            log.warning("[%s] %s", server_id, error)
            await self._discard(handle)
            raise error from None
        except (ToolRequestError, asyncio.CancelledError):
            await self._discard(handle)
            raise

        handle.write({"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}})
        await handle.flush()
        log.info("[%s] initialized", server_id)
        return self._start_result(server_id, result, already_running=False)

    def _start_result(self, server_id: str, result: dict[str, Any], *, already_running: bool) -> StartResult:
        info = result.get("serverInfo")
        return StartResult(
            server_id=server_id,
            already_running=already_running,
            protocol_version=str(result.get("protocolVersion") or ""),
            capabilities=dict(result.get("capabilities") or {}),
            server_info=dict(info) if isinstance(info, dict) else {},
        )

    async def stop_server(self, server_id: str) -> StopResult:
        handle = self._handles.pop(server_id, None)
        if handle is None:
            return StopResult(server_id=server_id, already_stopped=True)
        await self._terminate(handle)
        log.info("[%s] stopped", server_id)
        return StopResult(server_id=server_id)

    async def stop_all(self) -> None:
        for server_id in list(self._handles):
            await self.stop_server(server_id)

    async def _discard(self, handle: StdioServerHandle) -> None:
        if self._handles.get(handle.server_id) is handle:
            del self._handles[handle.server_id]
        await self._terminate(handle)
        if handle.handshake.done() and not handle.handshake.cancelled():
            handle.handshake.exception()

    async def _terminate(self, handle: StdioServerHandle) -> None:
        process = handle.process
        if process.returncode is None:
            for sig in (signal.SIGTERM, signal.SIGKILL):
                try:
                    os.killpg(os.getpgid(process.pid), sig)
                except ProcessLookupError:
                    break
                except PermissionError:
                    process.send_signal(sig)
                try:
                    await asyncio.wait_for(process.wait(), timeout=_STOP_GRACE)
                    break
                except asyncio.TimeoutError:
                    continue
        if handle.reader_task is not None:
            await asyncio.gather(handle.reader_task, return_exceptions=True)
        if handle.stderr_task is not None:
            handle.stderr_task.cancel()
            await asyncio.gather(handle.stderr_task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    async def _read_loop(self, handle: StdioServerHandle) -> None:
        try:
            async for message in handle.messages():
                self._dispatch(handle, message)
        except Exception as exc:  # noqa: BLE001
            log.warning("[%s] reader failed: %s", handle.server_id, exc)
        exit_code = await handle.process.wait()
        self._on_exit(handle, exit_code)

    def _dispatch(self, handle: StdioServerHandle, message: dict[str, Any]) -> None:
        msg_id = message.get("id")
        result = message.get("result")
        if not handle.initialized:
            if isinstance(result, dict) and isinstance(result.get("capabilities"), dict):
                handle.initialized = True
                if not handle.handshake.done():
                    handle.handshake.set_result(result)
                return
            if msg_id == handle.init_id and "error" in message:
                text, code = _error_message(message["error"])
                if not handle.handshake.done():
                    handle.handshake.set_exception(ToolServerError(f"initialize failed: {text}", code=code))
                return
        if not isinstance(msg_id, int):
            if "method" in message:
                log.debug("[%s] notification %s", handle.server_id, message.get("method"))
            return
        waiter = handle.pending_calls.pop(msg_id, None)
        if waiter is None or waiter.done():
            # Late response for a request that already timed out.
            log.debug("[%s] dropping response for unknown id %s", handle.server_id, msg_id)
            return
        if "error" in message and message["error"] is not None:
            text, code = _error_message(message["error"])
            waiter.set_exception(ToolServerError(text, code=code))
        else:
            waiter.set_result(result)

    def _on_exit(self, handle: StdioServerHandle, exit_code: int | None) -> None:
        if self._handles.get(handle.server_id) is handle:
            del self._handles[handle.server_id]
        if not handle.handshake.done():
            handle.handshake.set_exception(
                ToolProcessError(
                    f"Stdio server {handle.server_id} exited before initialize (exit code {exit_code})",
                    exit_code=exit_code,
                )
            )
        pending = list(handle.pending_calls.values())
        handle.pending_calls.clear()
        for waiter in pending:
            if not waiter.done():
                waiter.set_exception(
                    ToolProcessError(
                        f"Stdio server {handle.server_id} exited with code {exit_code}",
                        exit_code=exit_code,
                    )
                )
        if handle.initialized:
            log.info("[%s] process exited with code %s (%d pending failed)", handle.server_id, exit_code, len(pending))

    async def _drain_stderr(self, handle: StdioServerHandle) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                return
            log.debug("[%s] stderr: %s", handle.server_id, line.decode(errors="replace").rstrip())

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send_request(
        self,
        server_id: str,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        handle = self._handles.get(server_id)
        if handle is None or not handle.initialized:
            raise ToolConfigError(f"Stdio server not running: {server_id}")
        timeout = self.request_timeout if timeout is None else timeout
        msg_id = handle.allocate_id()
        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        handle.pending_calls[msg_id] = waiter
        try:
            handle.write({"jsonrpc": "2.0", "id": msg_id, "method": method, "params": dict(params or {})})
            await handle.flush()
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise ToolTimeoutError(
                f"Request {method} to stdio server {server_id} timed out after {timeout:g}s"
            ) from None
        finally:
            handle.pending_calls.pop(msg_id, None)

    async def list_tools(self, server_id: str) -> list[dict[str, Any]]:
        result = await self.send_request(server_id, "tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        return [t for t in tools if isinstance(t, dict)] if isinstance(tools, list) else []

    async def call_tool(self, server_id: str, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        result = await self.send_request(server_id, "tools/call", {"name": name, "arguments": dict(arguments or {})})
        return result if isinstance(result, dict) else {"content": result}


async def check_server(
    command: str,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    *,
    timeout: float = HANDSHAKE_TIMEOUT,
) -> list[dict[str, Any]]:
    """Start a server, list its tools, and kill it straight away."""
    manager = StdioServerManager(handshake_timeout=timeout, request_timeout=timeout)
    server_id = f"check-{uuid.uuid4().hex[:8]}"
    await manager.start_server(server_id, command, args, env)
    try:
        return await manager.list_tools(server_id)
    finally:
        await manager.stop_server(server_id)
