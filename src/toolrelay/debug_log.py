from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger("toolrelay.debug_log")

_WARN_INTERVAL = 60.0


class DebugLog:
    """Append-only JSONL record of tool activity.

    Writing is best effort: a failed append never reaches the caller, and the
    failure is reported through ``logging`` at most once a minute. Async
    callers use :meth:`awrite`, which appends on the default executor.
    """

    def __init__(self, path: Path | None = None, *, enabled: bool = True) -> None:
        self.path = path or (Path.cwd() / "logs" / "mcp-debug.log")
        self.enabled = enabled
        self._last_error_at: float | None = None

    def _row(self, event: str, fields: dict[str, Any]) -> str:
        row = {"ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"), "event": event, **fields}
        return json.dumps(row, ensure_ascii=False, default=str) + "\n"

    def _append(self, line: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as file:
                file.write(line)
        except OSError as exc:
            now = time.monotonic()
            if self._last_error_at is None or now - self._last_error_at > _WARN_INTERVAL:
                self._last_error_at = now
                log.warning("failed to write debug log %s: %s", self.path, exc)

    def write(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        self._append(self._row(event, fields))

    async def awrite(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        # Serialize now so the timestamp and field values are those of the event.
        line = self._row(event, fields)
        await asyncio.get_running_loop().run_in_executor(None, self._append, line)

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for raw in self.path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                rows.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return rows
