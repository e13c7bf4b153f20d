from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import ContainmentError, ToolConfigError


@dataclass(frozen=True)
class Workspace:
    name: str
    root_path: str
    is_repo: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "root_path", _normalize(self.root_path))

    @classmethod
    def from_dict(cls, raw: dict) -> "Workspace":
        root = str(raw.get("path") or raw.get("root_path") or "").strip()
        if not root:
            raise ToolConfigError("Workspace entry is missing a path.")
        name = str(raw.get("name") or Path(root).name or root)
        is_repo = bool(raw.get("is_repo", raw.get("isGitRepo", False)))
        return cls(name=name, root_path=root, is_repo=is_repo)

    def as_dict(self) -> dict[str, object]:
        return {"name": self.name, "path": self.root_path, "is_repo": self.is_repo}


@dataclass(frozen=True)
class ResolvedPath:
    absolute_path: str
    workspace: Workspace

    @property
    def relative_path(self) -> str:
        return relative_to_workspace(self.absolute_path, self.workspace)


def _normalize(path: str) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def _is_under(path: str, root: str) -> bool:
    # Component-wise prefix: "/ws-other" is not under "/ws".
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


def _safe_resolve(path: str) -> str:
    try:
        return str(Path(path).resolve())
    except (OSError, RuntimeError):
        return path


def relative_to_workspace(path: str, workspace: Workspace) -> str:
    rel = os.path.relpath(path, workspace.root_path)
    return "." if rel in {"", os.curdir} else rel


def resolve_workspace_path(
    workspaces: Sequence[Workspace],
    raw_path: str | None,
    workspace_name: str | None = None,
) -> ResolvedPath:
    """Resolve *raw_path* inside one of *workspaces* or raise.

    The lexical containment check runs before anything touches the
    filesystem; a second check after symlink resolution catches links that
    point outside the root.
    """
    if not workspaces:
        raise ToolConfigError("No workspace is attached.")
    default = workspaces[0]
    explicit = None
    if workspace_name:
        explicit = next((ws for ws in workspaces if ws.name == workspace_name), None)

    value = (raw_path or "").strip()
    if not value:
        value = (explicit or default).root_path

    if os.path.isabs(value) or value.startswith("~"):
        absolute = _normalize(value)
        owner = next((ws for ws in workspaces if _is_under(absolute, ws.root_path)), None)
        workspace = explicit or owner or default
    else:
        workspace = explicit or default
        absolute = os.path.normpath(os.path.join(workspace.root_path, value))

    if not _is_under(absolute, workspace.root_path):
        raise ContainmentError("Path is outside the allowed workspace roots.")

    real_root = _safe_resolve(workspace.root_path)
    if not _is_under(_safe_resolve(absolute), real_root):
        raise ContainmentError("Path is outside the allowed workspace roots.")
    return ResolvedPath(absolute_path=absolute, workspace=workspace)
