"""Shell command execution for the local tool executor.

The deny-list below is a coarse filter over the literal command string. It
is NOT a sandbox: commands run as the host user with the host environment,
and anything the patterns do not recognise (aliases, scripts, encoded
payloads, ``eval``) executes unchecked. Callers that need isolation must
provide it themselves (container, restricted user).
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass

from .errors import ToolDeniedError, ToolInputError

log = logging.getLogger("toolrelay.shell")

DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 60_000
MAX_CAPTURE_BYTES = 1_000_000
MAX_STDOUT_CHARS = 50_000
MAX_STDERR_CHARS = 10_000

# ---------------------------------------------------------------------------
# Dangerous-command blocklist
# ---------------------------------------------------------------------------

_DANGEROUS_RE = re.compile(
    r"""(
        # recursive rm aimed at /, /*, a top-level directory, or the home dir
        \brm\b[^|&;\n]*\s-(?:[a-zA-Z]*[rR][a-zA-Z]*|-recursive)\b[^|&;\n]*
            \s(?:/\*?|/[^/\s]+/?\*?|~/?\*?|\$HOME/?\*?)(?=\s|$|[;&|])
        |\brm\b[^|&;\n]*--no-preserve-root
        # privilege escalation in command position
        |(?:^|[;&|(`]|\$\()\s*(?:sudo|su|doas|pkexec)\b
        # fork bomb
        |:\(\)\s*\{[^}]*:\s*\|[^}]*:[^}]*&[^}]*\}[^;]*;
        # filesystem formatting
        |\bmkfs(?:\.\w+)?\b
        |\bmkswap\b
        |\bwipefs\b
        |\b(?:fdisk|sfdisk|parted)\b[^|&;\n]*/dev/
        # raw device writes
        |\bdd\b[^|&;\n]*\bof\s*=\s*/dev/(?!null\b)[a-z]
        |>\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk)[a-z0-9]*
        |\bshred\b[^|&;\n]*(/(bin|sbin|lib|boot|etc|usr)\b|/dev/)
        # overly permissive chmod
        |\bchmod\b[^|&;\n]*(?:\s0?777\b|\s[ugoa]*\+rwx\b)
        |\bchmod\b[^|&;\n]*[ao][+=]w[^|&;\n]*(/\s*$|/etc|/usr|/bin|/sbin|/lib|/boot)
        |\bchown\b[^|&;\n]*\s-[a-zA-Z]*R[a-zA-Z]*\b[^|&;\n]*\s/(?=\s|$)
        # kill -9 1 (init)
        |\bkill\s+-9\s+1\b
    )""",
    re.IGNORECASE | re.VERBOSE | re.MULTILINE,
)


def is_dangerous(command: str) -> bool:
    """Return True if the command matches a known-dangerous pattern."""
    return bool(_DANGEROUS_RE.search(command))


@dataclass(frozen=True)
class ShellResult:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    stdout_truncated: bool
    stderr_truncated: bool


def clamp_timeout_ms(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_TIMEOUT_MS
    return int(max(1, min(MAX_TIMEOUT_MS, value)))


class _Capture:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.overflow = False

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            room = self.limit - len(self.data)
            if len(chunk) > room:
                self.overflow = True
            if room > 0:
                self.data.extend(chunk[:room])

    def text(self, limit: int) -> tuple[str, bool]:
        decoded = self.data.decode(errors="replace")
        if len(decoded) <= limit:
            return decoded, self.overflow
        return decoded[:limit], True


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def run_command(command: str, cwd: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ShellResult:
    if not command or not command.strip():
        raise ToolInputError("Command is required for run_command.")
    if is_dangerous(command):
        log.warning("blocked command: %s", command)
        raise ToolDeniedError("Blocked: potentially destructive command refused for safety.")

    timeout_ms = clamp_timeout_ms(timeout_ms)
    proc = await asyncio.create_subprocess_exec(
        "bash",
        "-lc",
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=os.environ.copy(),
        start_new_session=True,
    )
    log.debug("run_command pid=%s cwd=%s: %s", proc.pid, cwd, command)
    out = _Capture(MAX_CAPTURE_BYTES)
    err = _Capture(MAX_CAPTURE_BYTES)

    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(out.drain(proc.stdout), err.drain(proc.stderr), proc.wait()),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        timed_out = True
        _kill_group(proc)
        await proc.wait()
        log.info("run_command timed out after %sms: %s", timeout_ms, command)
    except asyncio.CancelledError:
        _kill_group(proc)
        raise

    stdout, stdout_truncated = out.text(MAX_STDOUT_CHARS)
    stderr, stderr_truncated = err.text(MAX_STDERR_CHARS)
    if timed_out:
        stderr = (stderr + "\n" if stderr else "") + f"Command timed out after {timeout_ms}ms"
    return ShellResult(
        exit_code=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        stdout_truncated=stdout_truncated,
        stderr_truncated=stderr_truncated,
    )
