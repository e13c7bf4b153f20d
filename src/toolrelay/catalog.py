from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence

from .state import ToolCatalogEntry, ToolDescriptor
from .tools.local import LOCAL_TOOL_SERVER_NAME, local_tool_descriptors
from .tools.sandbox import Workspace

log = logging.getLogger("toolrelay.catalog")


@dataclass(frozen=True)
class ToolRoute:
    server: str
    is_stdio: bool = False


@dataclass(frozen=True)
class ServerTools:
    """Tools declared by one remote or stdio server."""

    name: str
    tools: Sequence[ToolDescriptor]
    is_stdio: bool = False


@dataclass
class ToolCatalog:
    tools: list[ToolDescriptor] = field(default_factory=list)
    mapping: dict[str, ToolRoute] = field(default_factory=dict)

    def entries(self) -> list[ToolCatalogEntry]:
        return [
            ToolCatalogEntry(
                name=tool.name,
                description=tool.description,
                server=self.mapping[tool.name].server,
                is_stdio=self.mapping[tool.name].is_stdio,
                is_local=self.mapping[tool.name].server == LOCAL_TOOL_SERVER_NAME,
            )
            for tool in self.tools
        ]

    def openai_tools(self) -> list[dict]:
        return [tool.as_openai_tool() for tool in self.tools]

    def route(self, name: str) -> ToolRoute | None:
        return self.mapping.get(name)

    def descriptor(self, name: str) -> ToolDescriptor | None:
        return next((t for t in self.tools if t.name == name), None)


def build_catalog(
    workspaces: Sequence[Workspace] | None,
    servers: Iterable[ServerTools] = (),
) -> ToolCatalog:
    """Local tools first, then each server's tools in the order given.

    A name already taken keeps its first registration.
    """
    catalog = ToolCatalog()
    for tool in local_tool_descriptors(workspaces):
        catalog.tools.append(tool)
        catalog.mapping[tool.name] = ToolRoute(server=LOCAL_TOOL_SERVER_NAME)
    for server in servers:
        for tool in server.tools:
            if not tool.name:
                continue
            if tool.name in catalog.mapping:
                log.warning(
                    "tool %s from %s shadowed by %s", tool.name, server.name, catalog.mapping[tool.name].server
                )
                continue
            catalog.tools.append(tool)
            catalog.mapping[tool.name] = ToolRoute(server=server.name, is_stdio=server.is_stdio)
    return catalog


BASE_SYSTEM_PROMPT = """You are a helpful AI assistant with access to tools. You can execute actions, read files, search code, and perform tasks on behalf of the user.

CRITICAL: You have real tool capabilities. When the user asks you to do something that requires tools (file access, code search, command execution, etc.), USE THE TOOLS. Do not claim you cannot do something if you have a tool for it.

Guidelines:
- Use tools proactively when they help accomplish the user's request
- If a tool fails, explain the error and try an alternative approach
- Be concise and direct in responses
- Use Markdown formatting for clarity"""


def build_tool_preprompt(
    tools: Sequence[ToolDescriptor],
    mapping: dict[str, ToolRoute] | None = None,
    workspaces: Sequence[Workspace] | None = None,
    today: date | None = None,
    format_description: str = "",
) -> str:
    """Render the tool section of the system prompt.

    Servers and their tools are sorted by name so the output is identical for
    identical inputs, which keeps provider prompt caches warm.
    """
    current = (today or date.today()).strftime("%B %d, %Y").replace(" 0", " ")
    lines = [BASE_SYSTEM_PROMPT, "", f"Today's date: {current}."]
    if not tools:
        return "\n".join(lines)

    grouped: dict[str, list[tuple[str, str]]] = {}
    for tool in tools:
        if not tool.name:
            continue
        route = (mapping or {}).get(tool.name)
        grouped.setdefault(route.server if route else "unknown", []).append(
            (tool.name, tool.description or "No description")
        )

    lines += [
        "",
        "# TOOLS YOU CAN USE",
        "You have the following tools available. USE THEM when the user's request requires file access, "
        "code execution, or any capability these tools provide.",
        "",
    ]
    for server in sorted(grouped):
        lines.append(f"### MCP Server: {server}")
        for name, desc in sorted(grouped[server]):
            lines.append(f"- **{name}**: {desc}")
        lines.append("")
    lines.append(
        "IMPORTANT: Do NOT say you cannot access files or execute commands. "
        "You CAN do these things using the tools above. Use them."
    )

    if format_description:
        lines += ["", format_description]

    if workspaces:
        lines += ["", "## Workspace Folders", "Project folders attached to this conversation:"]
        for ws in workspaces:
            git_note = " (git repo)" if ws.is_repo else ""
            lines.append(f"- **{ws.name}**: `{ws.root_path}`{git_note}")
        lines += ["", "Use filesystem/git tools on these paths."]
    return "\n".join(lines)
