from __future__ import annotations

import asyncio
import json
import logging
import os
from functools import partial
from typing import Any, Sequence

from ..state import ToolCatalogEntry, ToolDescriptor, ToolOutput
from .errors import ToolConfigError, ToolInputError
from .sandbox import Workspace, relative_to_workspace, resolve_workspace_path
from .search import MAX_RESULTS, search_code
from .shell import DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS, clamp_timeout_ms, run_command

log = logging.getLogger("toolrelay.local")

LOCAL_TOOL_SERVER_NAME = "local"

MAX_READ_BYTES = 200_000
MAX_WRITE_BYTES = 1_000_000
MAX_LIST_ENTRIES = 2000
DEFAULT_MAX_DEPTH = 4
MAX_DEPTH = 20

LIST_TOOLS_DESCRIPTOR = ToolDescriptor(
    name="local_list_tools",
    description="List available tools and their servers.",
    parameters={
        "type": "object",
        "properties": {
            "server": {"type": "string", "description": "Optional server filter."},
        },
    },
)

WORKSPACE_DESCRIPTORS: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(
        name="list_files",
        description=(
            "List files and folders in a workspace path. Use workspace + relative path "
            "or an absolute path inside a workspace."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to list."},
                "workspace": {"type": "string", "description": "Optional workspace name."},
                "recursive": {"type": "boolean", "default": False},
                "max_depth": {"type": "integer", "default": DEFAULT_MAX_DEPTH},
                "max_entries": {"type": "integer", "default": MAX_LIST_ENTRIES},
                "include_hidden": {"type": "boolean", "default": False},
                "include_node_modules": {"type": "boolean", "default": False},
            },
            "required": ["path"],
        },
    ),
    ToolDescriptor(
        name="read_file",
        description="Read a text file from a workspace path.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to read."},
                "workspace": {"type": "string", "description": "Optional workspace name."},
                "start": {"type": "integer", "default": 0},
                "max_bytes": {"type": "integer", "default": MAX_READ_BYTES},
            },
            "required": ["path"],
        },
    ),
    ToolDescriptor(
        name="write_file",
        description="Write a text file to a workspace path. Overwrites by default unless append=true.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to write."},
                "workspace": {"type": "string", "description": "Optional workspace name."},
                "content": {"type": "string", "description": "File contents to write."},
                "append": {"type": "boolean", "default": False},
            },
            "required": ["path", "content"],
        },
    ),
    ToolDescriptor(
        name="run_command",
        description=(
            "Run a shell command in a workspace root. Destructive commands are refused. "
            "Non-zero exit codes are returned with the output, not raised."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to run."},
                "workspace": {"type": "string", "description": "Optional workspace name."},
                "timeout_ms": {
                    "type": "integer",
                    "default": DEFAULT_TIMEOUT_MS,
                    "description": f"Wall-clock timeout, at most {MAX_TIMEOUT_MS}.",
                },
            },
            "required": ["command"],
        },
    ),
    ToolDescriptor(
        name="search_code",
        description=(
            "Search code with ast-grep (structural) or ripgrep (text). "
            "Falls back to text search when the structural backend is unavailable."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "ast-grep pattern or regular expression."},
                "path": {"type": "string", "description": "Optional path to search under."},
                "workspace": {"type": "string", "description": "Optional workspace name."},
                "mode": {"type": "string", "enum": ["ast", "text"], "default": "ast"},
                "lang": {"type": "string", "description": "Language hint, e.g. python, typescript."},
                "file_pattern": {"type": "string", "description": "Glob to restrict files, e.g. *.py"},
                "max_results": {"type": "integer", "default": MAX_RESULTS},
            },
            "required": ["pattern"],
        },
    ),
)

LOCAL_TOOL_NAMES = frozenset(
    [LIST_TOOLS_DESCRIPTOR.name] + [d.name for d in WORKSPACE_DESCRIPTORS]
)


def local_tool_descriptors(workspaces: Sequence[Workspace] | None) -> list[ToolDescriptor]:
    """Workspace tools are only offered once a workspace is attached."""
    tools = [LIST_TOOLS_DESCRIPTOR]
    if workspaces:
        tools.extend(WORKSPACE_DESCRIPTORS)
    return tools


def _as_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return int(value)


def _as_bool(value: Any, fallback: bool = False) -> bool:
    return value if isinstance(value, bool) else fallback


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _output(structured: dict[str, Any]) -> ToolOutput:
    return ToolOutput(text=json.dumps(structured, indent=2, ensure_ascii=False), structured=structured)


# ---------------------------------------------------------------------------
# Blocking filesystem helpers (run in the default executor)
# ---------------------------------------------------------------------------

def _walk(
    start: str,
    workspace: Workspace,
    *,
    recursive: bool,
    max_depth: int,
    max_entries: int,
    include_hidden: bool,
    include_node_modules: bool,
) -> tuple[list[dict[str, Any]], bool]:
    entries: list[dict[str, Any]] = []

    def skip(name: str) -> bool:
        if not include_hidden and name.startswith("."):
            return True
        return not include_node_modules and name == "node_modules"

    def visit(directory: str, depth: int) -> bool:
        # Returns False once the entry cap is hit.
        with os.scandir(directory) as it:
            items = sorted(it, key=lambda e: e.name)
        for item in items:
            if skip(item.name):
                continue
            if len(entries) >= max_entries:
                return False
            is_dir = item.is_dir(follow_symlinks=False)
            entry: dict[str, Any] = {
                "path": relative_to_workspace(item.path, workspace),
                "type": "dir" if is_dir else "file",
            }
            if not is_dir:
                try:
                    entry["size"] = item.stat().st_size
                except OSError:
                    pass
            entries.append(entry)
            if is_dir and recursive and depth < max_depth:
                if not visit(item.path, depth + 1):
                    return False
        return True

    if os.path.isdir(start):
        complete = visit(start, 1)
        return entries, not complete
    size = os.stat(start).st_size
    return [{"path": relative_to_workspace(start, workspace), "type": "file", "size": size}], False


def _read_slice(path: str, start: int, max_bytes: int) -> tuple[bytes, int, int]:
    with open(path, "rb") as fh:
        size = os.fstat(fh.fileno()).st_size
        safe_start = max(0, min(start, size))
        fh.seek(safe_start)
        data = fh.read(max(0, min(max_bytes, size - safe_start)))
    return data, safe_start, size


def _write(path: str, content: str, append: bool) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "a" if append else "w", encoding="utf-8") as fh:
        fh.write(content)


class LocalToolExecutor:
    """Filesystem, shell and search tools confined to a fixed set of workspaces."""

    def __init__(
        self,
        workspaces: Sequence[Workspace],
        catalog: Sequence[ToolCatalogEntry] | None = None,
    ) -> None:
        self.workspaces = list(workspaces)
        self.catalog = list(catalog or [])

    @property
    def default_workspace(self) -> Workspace | None:
        return self.workspaces[0] if self.workspaces else None

    def descriptors(self) -> list[ToolDescriptor]:
        return local_tool_descriptors(self.workspaces)

    async def _in_executor(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def execute(self, tool: str, args: dict[str, Any]) -> ToolOutput:
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ToolInputError(f"Arguments for {tool} must be an object, got {type(args).__name__}")
        if tool == "local_list_tools":
            return self.local_list_tools(_as_str(args.get("server")))
        if tool not in LOCAL_TOOL_NAMES:
            raise ToolConfigError(f"Unknown local tool: {tool}")
        workspace = _as_str(args.get("workspace"))
        if tool == "list_files":
            return await self.list_files(
                _as_str(args.get("path")) or "",
                workspace=workspace,
                recursive=_as_bool(args.get("recursive")),
                max_depth=_as_int(args.get("max_depth"), DEFAULT_MAX_DEPTH),
                max_entries=_as_int(args.get("max_entries"), MAX_LIST_ENTRIES),
                include_hidden=_as_bool(args.get("include_hidden")),
                include_node_modules=_as_bool(args.get("include_node_modules")),
            )
        if tool == "read_file":
            return await self.read_file(
                _as_str(args.get("path")) or "",
                workspace=workspace,
                start=_as_int(args.get("start"), 0),
                max_bytes=_as_int(args.get("max_bytes"), MAX_READ_BYTES),
            )
        if tool == "write_file":
            return await self.write_file(
                _as_str(args.get("path")) or "",
                _as_str(args.get("content")) or "",
                workspace=workspace,
                append=_as_bool(args.get("append")),
            )
        if tool == "run_command":
            return await self.run_command(
                _as_str(args.get("command")) or "",
                workspace=workspace,
                timeout_ms=clamp_timeout_ms(args.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            )
        return await self.search_code(
            _as_str(args.get("pattern")) or "",
            path=_as_str(args.get("path")),
            workspace=workspace,
            mode=_as_str(args.get("mode")) or "ast",
            lang=_as_str(args.get("lang")),
            file_pattern=_as_str(args.get("file_pattern")),
            max_results=_as_int(args.get("max_results"), MAX_RESULTS),
        )

    def local_list_tools(self, server: str | None = None) -> ToolOutput:
        entries = [e for e in self.catalog if server is None or e.server == server]
        return _output({"tools": [e.as_dict() for e in entries]})

    async def list_files(
        self,
        path: str,
        *,
        workspace: str | None = None,
        recursive: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_entries: int = MAX_LIST_ENTRIES,
        include_hidden: bool = False,
        include_node_modules: bool = False,
    ) -> ToolOutput:
        resolved = resolve_workspace_path(self.workspaces, path, workspace)
        entries, truncated = await self._in_executor(
            _walk,
            resolved.absolute_path,
            resolved.workspace,
            recursive=recursive,
            max_depth=max(1, min(MAX_DEPTH, max_depth)),
            max_entries=max(1, min(MAX_LIST_ENTRIES, max_entries)),
            include_hidden=include_hidden,
            include_node_modules=include_node_modules,
        )
        return _output(
            {
                "workspace": resolved.workspace.name,
                "path": resolved.relative_path,
                "entries": entries,
                "truncated": truncated,
            }
        )

    async def read_file(
        self,
        path: str,
        *,
        workspace: str | None = None,
        start: int = 0,
        max_bytes: int = MAX_READ_BYTES,
    ) -> ToolOutput:
        resolved = resolve_workspace_path(self.workspaces, path, workspace)
        max_bytes = max(1, min(MAX_READ_BYTES, max_bytes))
        data, safe_start, size = await self._in_executor(_read_slice, resolved.absolute_path, max(0, start), max_bytes)
        if b"\x00" in data:
            raise ToolInputError("Binary files are not supported.")
        return _output(
            {
                "workspace": resolved.workspace.name,
                "path": resolved.relative_path,
                "start": safe_start,
                "bytes": len(data),
                "totalBytes": size,
                "content": data.decode("utf-8", errors="replace"),
            }
        )

    async def write_file(
        self,
        path: str,
        content: str,
        *,
        workspace: str | None = None,
        append: bool = False,
    ) -> ToolOutput:
        if not content:
            raise ToolInputError("Content is required for write_file.")
        size = len(content.encode("utf-8"))
        if size > MAX_WRITE_BYTES:
            raise ToolInputError("Content exceeds maximum size for write_file.")
        resolved = resolve_workspace_path(self.workspaces, path, workspace)
        await self._in_executor(_write, resolved.absolute_path, content, append)
        log.info("write_file %s (%d bytes, append=%s)", resolved.absolute_path, size, append)
        return _output(
            {
                "workspace": resolved.workspace.name,
                "path": resolved.relative_path,
                "bytesWritten": size,
                "appended": append,
            }
        )

    async def run_command(
        self,
        command: str,
        *,
        workspace: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> ToolOutput:
        resolved = resolve_workspace_path(self.workspaces, "", workspace)
        result = await run_command(command, resolved.workspace.root_path, timeout_ms)
        return _output(
            {
                "workspace": resolved.workspace.name,
                "command": command,
                "exitCode": result.exit_code,
                "stdout": result.stdout,
                "stderr": result.stderr,
                "timedOut": result.timed_out,
                "stdoutTruncated": result.stdout_truncated,
                "stderrTruncated": result.stderr_truncated,
            }
        )

    async def search_code(
        self,
        pattern: str,
        *,
        path: str | None = None,
        workspace: str | None = None,
        mode: str = "ast",
        lang: str | None = None,
        file_pattern: str | None = None,
        max_results: int = MAX_RESULTS,
    ) -> ToolOutput:
        resolved = resolve_workspace_path(self.workspaces, path or "", workspace)
        result = await search_code(
            pattern,
            resolved.absolute_path,
            resolved.workspace.root_path,
            mode=mode,
            lang=lang,
            file_pattern=file_pattern,
            max_results=max_results,
        )
        structured = {"workspace": resolved.workspace.name, "pattern": pattern, "mode": mode}
        structured.update(result.as_dict())
        return _output(structured)
