from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .tools.sandbox import Workspace

log = logging.getLogger("toolrelay.config")

CONFIG_PATH = Path.home() / ".config" / "toolrelay" / "config.yml"


@dataclass(frozen=True)
class AppConfig:
    workspaces: list[dict[str, Any]] = field(default_factory=list)
    stdio_servers: list[dict[str, Any]] = field(default_factory=list)
    http_servers: list[dict[str, Any]] = field(default_factory=list)
    handshake_timeout: float = 10.0    # seconds to wait for a stdio server's initialize reply
    request_timeout: float = 30.0      # per-request timeout on a running stdio server
    pending_timeout_ms: int = 60_000   # out-of-band result delivery window
    api_host: str = "127.0.0.1"
    api_port: int = 8765
    debug_log: bool = True
    config_version: int = 1


def _clean_workspaces(raw: Any) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        path = item.get("path") or item.get("root_path")
        if not isinstance(path, str) or not path.strip():
            continue
        name = item.get("name") if isinstance(item.get("name"), str) and item["name"].strip() else Path(path).name
        cleaned.append({"name": name, "path": path, "is_repo": bool(item.get("is_repo", False))})
    return cleaned


def _clean_stdio_servers(raw: Any) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        server_id = item.get("id") or item.get("name")
        command = item.get("command")
        if not isinstance(server_id, str) or not isinstance(command, str) or not command.strip():
            continue
        args = item.get("args") if isinstance(item.get("args"), list) else []
        env = item.get("env") if isinstance(item.get("env"), dict) else {}
        cleaned.append(
            {
                "id": server_id,
                "command": command,
                "args": [str(a) for a in args],
                "env": {str(k): str(v) for k, v in env.items()},
            }
        )
    return cleaned


def _clean_http_servers(raw: Any) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        name, url = item.get("name"), item.get("url")
        if not isinstance(name, str) or not isinstance(url, str) or not url.startswith(("http://", "https://")):
            continue
        headers = item.get("headers") if isinstance(item.get("headers"), dict) else {}
        cleaned.append({"name": name, "url": url, "headers": {str(k): str(v) for k, v in headers.items()}})
    return cleaned


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    defaults = AppConfig().__dict__.copy()
    merged = {**defaults, **cfg}
    merged["workspaces"] = _clean_workspaces(merged.get("workspaces"))
    merged["stdio_servers"] = _clean_stdio_servers(merged.get("stdio_servers"))
    merged["http_servers"] = _clean_http_servers(merged.get("http_servers"))
    raw_ht = merged.get("handshake_timeout")
    merged["handshake_timeout"] = float(raw_ht) if isinstance(raw_ht, (int, float)) and raw_ht > 0 else defaults["handshake_timeout"]
    raw_rt = merged.get("request_timeout")
    merged["request_timeout"] = float(raw_rt) if isinstance(raw_rt, (int, float)) and raw_rt > 0 else defaults["request_timeout"]
    raw_pt = merged.get("pending_timeout_ms")
    merged["pending_timeout_ms"] = int(raw_pt) if isinstance(raw_pt, (int, float)) and int(raw_pt) > 0 else defaults["pending_timeout_ms"]
    if not isinstance(merged.get("api_host"), str) or not merged["api_host"].strip():
        merged["api_host"] = defaults["api_host"]
    raw_port = merged.get("api_port")
    merged["api_port"] = int(raw_port) if isinstance(raw_port, int) and 0 < raw_port < 65536 else defaults["api_port"]
    merged["debug_log"] = bool(merged.get("debug_log", defaults["debug_log"]))
    merged["config_version"] = defaults["config_version"]
    return {key: merged[key] for key in defaults}


def apply_env(cfg: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Overlay ``TOOLRELAY_WORKSPACES`` and ``MCP_SERVERS`` on a validated config."""
    env = os.environ if environ is None else environ
    result = dict(cfg)
    raw_ws = env.get("TOOLRELAY_WORKSPACES", "").strip()
    if raw_ws:
        result["workspaces"] = [
            {"name": Path(p).name or p, "path": p, "is_repo": os.path.isdir(os.path.join(p, ".git"))}
            for p in raw_ws.split(os.pathsep)
            if p.strip()
        ]
    raw_servers = env.get("MCP_SERVERS", "").strip()
    if raw_servers:
        try:
            parsed = json.loads(raw_servers)
        except json.JSONDecodeError as exc:
            log.warning("ignoring MCP_SERVERS: %s", exc)
        else:
            result["http_servers"] = _clean_http_servers(parsed)
    return result


def workspaces_from_config(cfg: Mapping[str, Any]) -> list[Workspace]:
    return [Workspace(name=w["name"], root_path=w["path"], is_repo=w.get("is_repo", False)) for w in cfg.get("workspaces", [])]


def load_config(path: Path = CONFIG_PATH) -> dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        cfg = _validate({})
        save_config(cfg, path)
        return cfg

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = _validate(raw if isinstance(raw, dict) else {})
    if cfg != raw:
        save_config(cfg, path)
    return cfg


def save_config(cfg: dict[str, Any], path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    validated = _validate(cfg)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(yaml.safe_dump(validated, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)
