from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import CONFIG_PATH, apply_env, load_config, workspaces_from_config
from .debug_log import DebugLog
from .mcp_server import main as mcp_main
from .remote import RemoteToolServer
from .stdio import StdioServerManager, check_server
from .tool_format import canonical_from_native_list, detect_tool_format, parse_tool_args, parse_tool_calls
from .tools.errors import ToolRequestError
from .tools.manager import ToolManager
from .tools.sandbox import Workspace

log = logging.getLogger("toolrelay.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolrelay",
        description="Tool-calling host: stdio tool servers, sandboxed workspace tools, tool-call parsing.",
    )
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="Path to config.yml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser(
        "mcp",
        help="Serve the workspace tools over stdio (newline-delimited JSON-RPC).",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API (result delivery + tool debugger)")
    serve_parser.add_argument("--host", help="Bind address (default: api_host from config)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: api_port from config)")
    serve_parser.set_defaults(func=serve_command)

    tools_parser = subparsers.add_parser("tools", help="List every tool in the catalog")
    tools_parser.add_argument("--json", action="store_true", help="Print OpenAI-style tool definitions")
    tools_parser.add_argument("--workspace", action="append", default=[], help="Attach a workspace folder")
    tools_parser.set_defaults(func=tools_command)

    call_parser = subparsers.add_parser("call", help="Run one tool and print its output")
    call_parser.add_argument("tool", help="Tool name")
    call_parser.add_argument("arguments", nargs="?", default="{}", help="Arguments as JSON, YAML or key=value XML")
    call_parser.add_argument("--workspace", action="append", default=[], help="Attach a workspace folder")
    call_parser.set_defaults(func=call_command)

    check_parser = subparsers.add_parser("check", help="Start a stdio tool server once and list its tools")
    check_parser.add_argument("server_command", help="Executable to launch")
    check_parser.add_argument("server_args", nargs=argparse.REMAINDER, help="Arguments for the executable")
    check_parser.add_argument("--timeout", type=float, default=10.0, help="Seconds to wait (default: 10)")
    check_parser.set_defaults(func=check_command)

    parse_parser = subparsers.add_parser("parse", help="Extract tool calls from model output read on stdin")
    parse_parser.add_argument("--model", default="", help="Model id used to pick the text format")
    parse_parser.add_argument(
        "--native",
        action="store_true",
        help="Read provider-native tool_calls JSON (a list, or a message with tool_calls) instead of text",
    )
    parse_parser.set_defaults(func=parse_command)

    return parser


def _load(args: argparse.Namespace) -> dict[str, Any]:
    cfg = apply_env(load_config(args.config))
    extra = [Workspace(name=Path(p).name or p, root_path=p) for p in getattr(args, "workspace", [])]
    if extra:
        cfg["workspaces"] = [w.as_dict() for w in extra]
    return cfg


def _build_manager(cfg: dict[str, Any]) -> ToolManager:
    return ToolManager(
        workspaces_from_config(cfg),
        stdio=StdioServerManager(
            handshake_timeout=cfg["handshake_timeout"],
            request_timeout=cfg["request_timeout"],
        ),
        remotes=[RemoteToolServer(s["name"], s["url"], s.get("headers")) for s in cfg["http_servers"]],
        debug_log=DebugLog(enabled=cfg["debug_log"]),
        pending_timeout_ms=cfg["pending_timeout_ms"],
    )


def serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    cfg = _load(args)
    manager = _build_manager(cfg)
    app = create_app(manager, stdio_servers=cfg["stdio_servers"])
    uvicorn.run(app, host=args.host or cfg["api_host"], port=args.port or cfg["api_port"], log_level="info")
    return 0


async def _with_manager(cfg: dict[str, Any], action) -> int:
    manager = _build_manager(cfg)
    try:
        await manager.start_stdio_servers(cfg["stdio_servers"])
        await manager.refresh_catalog()
        return await action(manager)
    finally:
        await manager.close()


def tools_command(args: argparse.Namespace) -> int:
    async def show(manager: ToolManager) -> int:
        if args.json:
            print(json.dumps(manager.tool_definitions(), indent=2))
            return 0
        for entry in manager.catalog.entries():
            print(f"{entry.server:<16} {entry.name:<24} {entry.description.splitlines()[0] if entry.description else ''}")
        return 0

    return asyncio.run(_with_manager(_load(args), show))


def call_command(args: argparse.Namespace) -> int:
    tool_args, error = parse_tool_args(args.tool, args.arguments)
    if error:
        print(f"error: {error}", file=sys.stderr)
        return 2

    async def run(manager: ToolManager) -> int:
        try:
            output = await manager.execute(args.tool, tool_args)
        except ToolRequestError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        print(output.text)
        return 0

    return asyncio.run(_with_manager(_load(args), run))


def check_command(args: argparse.Namespace) -> int:
    try:
        tools = asyncio.run(check_server(args.server_command, args.server_args, timeout=args.timeout))
    except ToolRequestError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"{len(tools)} tool(s)")
    for tool in tools:
        print(f"  {tool.get('name', '?')}: {tool.get('description', '')}")
    return 0


def parse_command(args: argparse.Namespace) -> int:
    content = sys.stdin.read()
    if getattr(args, "native", False):
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            print(f"error: invalid JSON: {exc}", file=sys.stderr)
            return 2
        if isinstance(payload, dict):
            payload = payload.get("tool_calls") or []
        calls = canonical_from_native_list(payload if isinstance(payload, list) else [])
    else:
        calls = parse_tool_calls(content, args.model)
        log.debug("format %s, %d call(s)", detect_tool_format(args.model), len(calls))
    print(json.dumps([call.as_openai_tool_call() for call in calls], indent=2, ensure_ascii=False))
    return 0 if calls else 1


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if args.command == "mcp":
        mcp_main()
        return
    if hasattr(args, "func"):
        sys.exit(args.func(args))
    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
