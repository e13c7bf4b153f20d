from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterable, Mapping, Sequence
from typing import Any

from ..catalog import ServerTools, ToolCatalog, build_catalog, build_tool_preprompt
from ..debug_log import DebugLog
from ..pending import DEFAULT_TIMEOUT_MS, PendingRequestLedger, PendingStdioRequest
from ..remote import RemoteToolServer
from ..state import CanonicalToolCall, ToolContext, ToolDescriptor, ToolOutput
from ..stdio import StdioServerManager
from ..tool_format import tool_format_description
from ..tool_scheduler import ToolScheduler, ToolUpdate
from .errors import ToolAbortedError, ToolConfigError, ToolInputError, ToolRequestError, ToolServerError
from .local import LOCAL_TOOL_SERVER_NAME, LocalToolExecutor
from .sandbox import Workspace

log = logging.getLogger("toolrelay.manager")


def format_tool_result(result: Any) -> ToolOutput:
    """Flatten an MCP ``tools/call`` result into text plus the raw payload.

    Text blocks are joined with newlines; other block types are summarised by
    their type. ``isError`` results raise ``ToolServerError`` with that text.
    """
    if not isinstance(result, dict):
        return ToolOutput(text="" if result is None else str(result), structured=result)
    parts: list[str] = []
    content = result.get("content")
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                parts.append(str(block))
            elif block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            else:
                parts.append(f"[{block.get('type', 'content')}]")
    elif isinstance(content, str):
        parts.append(content)
    text = "\n".join(p for p in parts if p)
    if result.get("isError"):
        raise ToolServerError(text or "Tool reported an error")
    structured = result.get("structuredContent", result)
    return ToolOutput(text=text, structured=structured)


class ToolManager:
    """Routes a tool call to the local executor, a stdio server or an HTTP server.

    Tools whose server is registered as *delegated* are executed by someone
    else: the manager opens a ledger entry, hands it to ``delegate`` and waits
    for the result to come back through ``PendingRequestLedger.resolve``.
    """

    def __init__(
        self,
        workspaces: Sequence[Workspace] = (),
        *,
        stdio: StdioServerManager | None = None,
        remotes: Iterable[RemoteToolServer] = (),
        ledger: PendingRequestLedger | None = None,
        delegate: Callable[[PendingStdioRequest], None] | None = None,
        debug_log: DebugLog | None = None,
        pending_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.workspaces = list(workspaces)
        self.stdio = stdio or StdioServerManager()
        self.remotes = {remote.name: remote for remote in remotes}
        self.ledger = ledger or PendingRequestLedger()
        self.delegate = delegate
        self.debug_log = debug_log or DebugLog(enabled=False)
        self.pending_timeout_ms = pending_timeout_ms
        self._server_tools: dict[str, ServerTools] = {}
        self._delegated: set[str] = set()
        self._catalog = build_catalog(self.workspaces)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> ToolCatalog:
        return self._catalog

    def register_delegated(self, server: str, tools: Iterable[Mapping[str, Any]]) -> None:
        descriptors = [ToolDescriptor.from_openai_tool(dict(t)) for t in tools]
        self._delegated.add(server)
        self._server_tools[server] = ServerTools(server, descriptors, is_stdio=True)
        self._rebuild()

    async def start_stdio_servers(self, specs: Iterable[Mapping[str, Any]]) -> list[str]:
        started: list[str] = []
        for spec in specs:
            server_id = str(spec.get("id") or spec.get("name") or "")
            command = str(spec.get("command") or "")
            if not server_id or not command:
                log.warning("skipping stdio server without id or command: %r", spec)
                continue
            try:
                await self.stdio.start_server(server_id, command, spec.get("args") or [], spec.get("env") or {})
            except ToolRequestError as exc:
                log.error("stdio server %s failed to start: %s", server_id, exc)
                await self.debug_log.awrite("stdio_start_failed", server=server_id, error=str(exc))
                continue
            started.append(server_id)
        return started

    async def refresh_catalog(self) -> ToolCatalog:
        for server_id in self.stdio.running():
            try:
                tools = await self.stdio.list_tools(server_id)
            except ToolRequestError as exc:
                log.warning("tools/list failed for %s: %s", server_id, exc)
                continue
            self._server_tools[server_id] = ServerTools(
                server_id, [ToolDescriptor.from_openai_tool(t) for t in tools], is_stdio=True
            )
        for name, remote in self.remotes.items():
            try:
                tools = await remote.list_tools()
            except ToolRequestError as exc:
                log.warning("tools/list failed for %s: %s", name, exc)
                continue
            self._server_tools[name] = ServerTools(name, [ToolDescriptor.from_openai_tool(t) for t in tools])
        return self._rebuild()

    def _rebuild(self) -> ToolCatalog:
        self._catalog = build_catalog(self.workspaces, self._server_tools.values())
        return self._catalog

    def tool_definitions(self) -> list[dict[str, Any]]:
        return self._catalog.openai_tools()

    def system_prompt(self, model_id: str = "") -> str:
        return build_tool_preprompt(
            self._catalog.tools,
            self._catalog.mapping,
            self.workspaces,
            format_description=tool_format_description(model_id) if model_id else "",
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        tool_name: str,
        args: Mapping[str, Any] | None = None,
        context: ToolContext | None = None,
    ) -> ToolOutput:
        context = context or ToolContext()
        args = dict(args or {})
        catalog = self._catalog_for(context)
        route = catalog.route(tool_name)
        if route is None:
            await self.debug_log.awrite("tool_unknown", tool=tool_name)
            raise ToolConfigError(f"Unknown tool: {tool_name}")

        await self.debug_log.awrite("tool_call", tool=tool_name, server=route.server, args=args)
        start = time.monotonic()
        try:
            if route.server == LOCAL_TOOL_SERVER_NAME:
                output = await self._abortable(self._run_local(tool_name, args, context, catalog), context)
            elif route.server in self._delegated:
                output = await self._abortable(self._run_delegated(route.server, tool_name, args), context)
            elif route.is_stdio:
                output = await self._abortable(self._run_stdio(route.server, tool_name, args), context)
            else:
                output = await self._abortable(self._run_remote(route.server, tool_name, args), context)
        except OSError as exc:
            await self.debug_log.awrite("tool_error", tool=tool_name, error=str(exc))
            raise ToolInputError(f"{tool_name}: {exc.strerror or exc}") from exc
        except ToolRequestError as exc:
            await self.debug_log.awrite("tool_error", tool=tool_name, error=str(exc), status=exc.status_code)
            raise
        duration = time.monotonic() - start
        await self.debug_log.awrite("tool_result", tool=tool_name, duration=round(duration, 3), chars=len(output.text))
        log.debug("%s via %s took %.2fs", tool_name, route.server, duration)
        return output

    async def _abortable(self, coro: Coroutine[Any, Any, ToolOutput], context: ToolContext) -> ToolOutput:
        abort = context.abort
        if abort is None:
            return await coro
        if abort.is_set():
            coro.close()
            raise ToolAbortedError("Tool call aborted")
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise ToolAbortedError("Tool call aborted")
        return task.result()

    def _catalog_for(self, context: ToolContext) -> ToolCatalog:
        # Workspaces supplied with the call replace the configured ones for routing too.
        if context.workspaces and list(context.workspaces) != self.workspaces:
            return build_catalog(context.workspaces, self._server_tools.values())
        return self._catalog

    async def _run_local(
        self, tool_name: str, args: dict[str, Any], context: ToolContext, catalog: ToolCatalog
    ) -> ToolOutput:
        executor = LocalToolExecutor(
            context.workspaces or self.workspaces,
            context.catalog or catalog.entries(),
        )
        return await executor.execute(tool_name, args)

    async def _run_stdio(self, server_id: str, tool_name: str, args: dict[str, Any]) -> ToolOutput:
        if not self.stdio.is_running(server_id):
            raise ToolConfigError(f"Stdio server {server_id} is not running")
        return format_tool_result(await self.stdio.call_tool(server_id, tool_name, args))

    async def _run_remote(self, server: str, tool_name: str, args: dict[str, Any]) -> ToolOutput:
        remote = self.remotes.get(server)
        if remote is None:
            raise ToolConfigError(f"No tool server named {server}")
        return format_tool_result(await remote.call_tool(tool_name, args))

    async def _run_delegated(self, server: str, tool_name: str, args: dict[str, Any]) -> ToolOutput:
        if self.delegate is None:
            raise ToolConfigError(f"No executor attached for {server}")
        request_id, future = self.ledger.create(server, tool_name, args, self.pending_timeout_ms)
        entry = self.ledger.get(request_id)
        if entry is not None:
            self.delegate(entry)
        await self.debug_log.awrite("stdio_pending", request_id=request_id, server=server, tool=tool_name)
        result = await future
        if not result.success:
            raise ToolRequestError(result.error or f"{tool_name} failed")
        return ToolOutput(text=result.output or "", structured={"requestId": request_id, "output": result.output})

    def scheduler(
        self,
        context: ToolContext | None = None,
        *,
        on_update: Callable[[ToolUpdate], None] | None = None,
        concurrency: int = 1,
    ) -> ToolScheduler:
        """Scheduler that runs canonical calls through ``execute`` under one context."""

        async def runner(call: CanonicalToolCall) -> ToolOutput:
            return await self.execute(call.name, call.arguments, context)

        return ToolScheduler(runner, on_update=on_update, concurrency=concurrency)

    async def close(self) -> None:
        cancelled = self.ledger.cancel_all("Tool host shutting down")
        if cancelled:
            log.info("cancelled %d pending request(s)", cancelled)
        await self.stdio.stop_all()
