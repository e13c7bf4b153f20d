"""
Stdio tool server for toolrelay.

Exposes the workspace tools (list_files, read_file, write_file, run_command,
search_code, local_list_tools) to any client that speaks newline-delimited
JSON-RPC 2.0 over stdio, including ``toolrelay.stdio.StdioServerManager``.

Workspaces come from ``TOOLRELAY_WORKSPACES`` (os.pathsep separated) when set,
otherwise from the ``workspaces`` list in ~/.config/toolrelay/config.yml.
Logging goes to stderr; stdout carries protocol messages only.

Usage
-----
Run directly:
    python -m toolrelay.mcp_server

Or via the CLI:
    toolrelay mcp

Client entry
------------
{
  "mcpServers": {
    "toolrelay": {
      "command": "toolrelay",
      "args": ["mcp"],
      "env": {"TOOLRELAY_WORKSPACES": "/home/<user>/git/project"}
    }
  }
}
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from .catalog import build_catalog
from .config import apply_env, load_config, workspaces_from_config
from .stdio import PROTOCOL_VERSION
from .tools.errors import ToolRequestError
from .tools.local import LocalToolExecutor

log = logging.getLogger("toolrelay.mcp_server")

_SUPPORTED_VERSIONS = {"2024-11-05", "2025-03-26"}
_executor: LocalToolExecutor | None = None


def _get_executor() -> LocalToolExecutor:
    global _executor
    if _executor is None:
        cfg = apply_env(load_config())
        workspaces = workspaces_from_config(cfg)
        _executor = LocalToolExecutor(workspaces, build_catalog(workspaces).entries())
        log.info("serving %d workspace(s): %s", len(workspaces), ", ".join(w.root_path for w in workspaces))
    return _executor


def _tool_schemas(executor: LocalToolExecutor) -> list[dict[str, Any]]:
    return [
        {"name": tool.name, "description": tool.description, "inputSchema": tool.parameters}
        for tool in executor.descriptors()
    ]


async def _call_tool(executor: LocalToolExecutor, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Run a tool and wrap its output as an MCP ``tools/call`` result."""
    try:
        output = await executor.execute(name, arguments)
    except ToolRequestError as exc:
        log.warning("tool %s failed: %s", name, exc)
        return {"content": [{"type": "text", "text": f"Error: {exc}"}], "isError": True}
    except OSError as exc:
        return {"content": [{"type": "text", "text": f"Error: {exc.strerror or exc}"}], "isError": True}
    except Exception as exc:
        log.exception("tool %s crashed", name)
        return {"content": [{"type": "text", "text": f"Error: {exc}"}], "isError": True}
    result: dict[str, Any] = {"content": [{"type": "text", "text": output.text}], "isError": False}
    if isinstance(output.structured, dict):
        result["structuredContent"] = output.structured
    return result


def _ok(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _err(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _write(obj: dict) -> None:
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


# ---------------------------------------------------------------------------
# Main request handler
# ---------------------------------------------------------------------------

async def _handle(line: str, executor: LocalToolExecutor | None = None) -> dict | None:
    try:
        req = json.loads(line)
    except json.JSONDecodeError:
        return _err(None, -32700, "Parse error")
    if not isinstance(req, dict):
        return _err(None, -32600, "Invalid Request")

    req_id = req.get("id")
    method = req.get("method", "")
    params = req.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return _err(req_id, -32602, "Invalid params: expected an object")

    if method == "initialize":
        client_ver = params.get("protocolVersion", PROTOCOL_VERSION)
        agreed_ver = client_ver if client_ver in _SUPPORTED_VERSIONS else PROTOCOL_VERSION
        return _ok(req_id, {
            "protocolVersion": agreed_ver,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "toolrelay", "version": "1.0.0"},
        })

    if method == "notifications/initialized":
        return None

    if method == "tools/list":
        return _ok(req_id, {"tools": _tool_schemas(executor or _get_executor())})

    if method == "tools/call":
        tool_name = params.get("name", "")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(tool_name, str) or not isinstance(arguments, dict):
            return _err(req_id, -32602, "Invalid params: name must be a string and arguments an object")
        return _ok(req_id, await _call_tool(executor or _get_executor(), tool_name, arguments))

    if method == "ping":
        return _ok(req_id, {})

    if req_id is not None:
        return _err(req_id, -32601, f"Method not found: {method}")
    return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run() -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=16 * 1024 * 1024)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    while True:
        try:
            line_bytes = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as exc:
            log.error("stdin read failed: %s", exc)
            break
        if not line_bytes:
            break
        line = line_bytes.decode(errors="replace").strip()
        if line:
            response = await _handle(line)
            if response is not None:
                _write(response)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    asyncio.run(_run())


if __name__ == "__main__":
    main()
