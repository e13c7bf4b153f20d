from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Sequence, Union

from .tools.sandbox import Workspace

# JSON value carried in tool-call arguments.
ToolValue = Union[str, int, float, bool, None, dict[str, Any], list[Any]]


@dataclass(frozen=True)
class CanonicalToolCall:
    id: str
    name: str
    arguments: dict[str, ToolValue] = field(default_factory=dict)

    def as_openai_tool_call(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_openai_tool(cls, raw: dict[str, Any]) -> "ToolDescriptor":
        fn = raw.get("function", raw)
        return cls(
            name=str(fn.get("name", "")),
            description=str(fn.get("description") or ""),
            parameters=fn.get("parameters") or fn.get("inputSchema") or {"type": "object", "properties": {}},
        )

    def param_types(self) -> dict[str, str]:
        props = self.parameters.get("properties") if isinstance(self.parameters, dict) else None
        if not isinstance(props, dict):
            return {}
        types: dict[str, str] = {}
        for key, value in props.items():
            declared = value.get("type") if isinstance(value, dict) else None
            types[key] = declared if isinstance(declared, str) else "string"
        return types


@dataclass(frozen=True)
class ToolCatalogEntry:
    name: str
    description: str = ""
    server: str = ""
    is_stdio: bool = False
    is_local: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "server": self.server,
            "isStdio": self.is_stdio,
            "isLocal": self.is_local,
        }


@dataclass(frozen=True)
class ToolOutput:
    text: str
    structured: Any = None


@dataclass
class ToolContext:
    workspaces: Sequence[Workspace] = ()
    abort: asyncio.Event | None = None
    catalog: Sequence[ToolCatalogEntry] = ()
