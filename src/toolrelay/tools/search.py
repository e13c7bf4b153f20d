"""
Tiered code search for the local tool executor.

Tier 1: ast-grep structural search, mode="ast" only.
Tier 2: ripgrep with ``--json`` output.
Tier 3: plain ``grep -rn``.

A tier is skipped when its binary is missing or it exits with an error; the
next tier then runs with the same pattern. Each tier's output is parsed into
the same ``SearchMatch`` list, and the result records which backend answered
and why earlier tiers were skipped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from dataclasses import asdict, dataclass, field

from .errors import ToolConfigError, ToolInputError

log = logging.getLogger("toolrelay.search")

MAX_RESULTS = 100
_BACKEND_TIMEOUT = 30.0
_LINE_MAX_CHARS = 500

_LANG_GLOBS = {
    "python": "*.py",
    "py": "*.py",
    "javascript": "*.js",
    "js": "*.js",
    "jsx": "*.jsx",
    "typescript": "*.ts",
    "ts": "*.ts",
    "tsx": "*.tsx",
    "rust": "*.rs",
    "go": "*.go",
    "java": "*.java",
    "c": "*.c",
    "cpp": "*.cpp",
    "ruby": "*.rb",
    "svelte": "*.svelte",
}

_METAVAR_RE = re.compile(r"\$\$?\$?[A-Z_]")


@dataclass(frozen=True)
class SearchMatch:
    file: str
    line: int
    content: str


@dataclass
class SearchResult:
    backend: str
    matches: list[SearchMatch]
    truncated: bool
    fallback: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "fallback": list(self.fallback),
            "matches": [asdict(m) for m in self.matches],
            "count": len(self.matches),
            "truncated": self.truncated,
        }


class _BackendUnavailable(Exception):
    pass


def clamp_max_results(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return MAX_RESULTS
    return int(max(1, min(MAX_RESULTS, value)))


def _relative(path: str, root: str, search_path: str) -> str:
    if not os.path.isabs(path):
        path = os.path.join(search_path if os.path.isdir(search_path) else os.path.dirname(search_path), path)
    rel = os.path.relpath(os.path.normpath(path), root)
    return "." if rel == os.curdir else rel


def _clip_line(text: str) -> str:
    text = text.rstrip("\r\n")
    return text if len(text) <= _LINE_MAX_CHARS else text[:_LINE_MAX_CHARS]


async def _exec(cmd: list[str], cwd: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=_BACKEND_TIMEOUT)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return proc.returncode or 0, out.decode(errors="replace"), err.decode(errors="replace")


# ---------------------------------------------------------------------------
# Output parsers (one per backend)
# ---------------------------------------------------------------------------

def parse_ast_grep_output(stdout: str, root: str, search_path: str) -> list[SearchMatch]:
    text = stdout.strip()
    if not text:
        return []
    items: list[dict] = []
    if text.startswith("["):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError:
            loaded = []
        items = [i for i in loaded if isinstance(i, dict)]
    else:
        for line in text.splitlines():
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                items.append(item)
    matches: list[SearchMatch] = []
    for item in items:
        file_path = item.get("file")
        start = ((item.get("range") or {}).get("start") or {}).get("line")
        if not isinstance(file_path, str) or not isinstance(start, int):
            continue
        content = item.get("lines") or item.get("text") or ""
        first = str(content).splitlines()[0] if content else ""
        matches.append(SearchMatch(file=_relative(file_path, root, search_path), line=start + 1, content=_clip_line(first)))
    return matches


def parse_ripgrep_output(stdout: str, root: str, search_path: str) -> list[SearchMatch]:
    matches: list[SearchMatch] = []
    for line in stdout.splitlines():
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict) or event.get("type") != "match":
            continue
        data = event.get("data") or {}
        file_path = (data.get("path") or {}).get("text")
        line_no = data.get("line_number")
        content = (data.get("lines") or {}).get("text") or ""
        if not isinstance(file_path, str) or not isinstance(line_no, int):
            continue
        matches.append(SearchMatch(file=_relative(file_path, root, search_path), line=line_no, content=_clip_line(content)))
    return matches


_GREP_LINE_RE = re.compile(r"^(?P<file>.+?):(?P<line>\d+):(?P<content>.*)$")


def parse_grep_output(stdout: str, root: str, search_path: str) -> list[SearchMatch]:
    matches: list[SearchMatch] = []
    for line in stdout.splitlines():
        m = _GREP_LINE_RE.match(line)
        if not m:
            continue
        matches.append(
            SearchMatch(
                file=_relative(m.group("file"), root, search_path),
                line=int(m.group("line")),
                content=_clip_line(m.group("content")),
            )
        )
    return matches


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

async def _ast_grep(pattern: str, path: str, root: str, lang: str | None, glob: str | None) -> list[SearchMatch]:
    # "sg" is also the shadow-group utility on most Linux systems, so only the long name is trusted.
    binary = shutil.which("ast-grep")
    if binary is None:
        raise _BackendUnavailable("ast-grep not installed")
    cmd = [binary, "run", "--pattern", pattern, "--json=stream"]
    if lang:
        cmd += ["--lang", lang]
    if glob:
        cmd += ["--globs", glob]
    cmd.append(path)
    code, out, err = await _exec(cmd, root)
    if code not in (0, 1) or (code == 1 and err.strip()):
        raise _BackendUnavailable(f"ast-grep failed: {err.strip()[:200] or f'exit {code}'}")
    matches = parse_ast_grep_output(out, root, path)
    if not matches and not _METAVAR_RE.search(pattern):
        raise _BackendUnavailable("ast-grep found nothing for a non-structural pattern")
    return matches


async def _ripgrep(pattern: str, path: str, root: str, glob: str | None) -> list[SearchMatch]:
    binary = shutil.which("rg")
    if binary is None:
        raise _BackendUnavailable("ripgrep not installed")
    cmd = [binary, "--json", "--color", "never", "--no-messages"]
    if glob:
        cmd += ["-g", glob]
    cmd += ["-e", pattern, path]
    code, out, err = await _exec(cmd, root)
    if code == 1:
        return []
    if code != 0:
        raise _BackendUnavailable(f"ripgrep failed: {err.strip()[:200] or f'exit {code}'}")
    return parse_ripgrep_output(out, root, path)


async def _grep(pattern: str, path: str, root: str, glob: str | None) -> list[SearchMatch]:
    binary = shutil.which("grep")
    if binary is None:
        raise ToolConfigError("No code search backend is available (ast-grep, rg, grep).")
    cmd = [binary, "-rnHIE", "--exclude-dir=.git", "--exclude-dir=node_modules"]
    if glob:
        cmd.append(f"--include={glob}")
    cmd += ["-e", pattern, path]
    code, out, err = await _exec(cmd, root)
    if code == 1:
        return []
    if code != 0:
        raise ToolInputError(f"grep failed: {err.strip()[:200] or f'exit {code}'}")
    return parse_grep_output(out, root, path)


async def search_code(
    pattern: str,
    path: str,
    root: str,
    *,
    mode: str = "ast",
    lang: str | None = None,
    file_pattern: str | None = None,
    max_results: int = MAX_RESULTS,
) -> SearchResult:
    if not pattern:
        raise ToolInputError("Pattern is required for search_code.")
    if mode not in {"ast", "text"}:
        raise ToolInputError(f"Unknown search mode: {mode}")
    max_results = clamp_max_results(max_results)
    glob = file_pattern or (_LANG_GLOBS.get(lang.lower()) if lang else None)
    skipped: list[str] = []

    matches: list[SearchMatch] | None = None
    backend = ""
    if mode == "ast":
        try:
            matches = await _ast_grep(pattern, path, root, lang, file_pattern)
            backend = "ast-grep"
        except _BackendUnavailable as exc:
            log.debug("search_code fallback: %s", exc)
            skipped.append(str(exc))
    if matches is None:
        try:
            matches = await _ripgrep(pattern, path, root, glob)
            backend = "ripgrep"
        except _BackendUnavailable as exc:
            log.debug("search_code fallback: %s", exc)
            skipped.append(str(exc))
    if matches is None:
        matches = await _grep(pattern, path, root, glob)
        backend = "grep"

    truncated = len(matches) > max_results
    return SearchResult(backend=backend, matches=matches[:max_results], truncated=truncated, fallback=skipped)
