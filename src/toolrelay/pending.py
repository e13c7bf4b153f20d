from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .tools.errors import ToolRequestError, ToolTimeoutError

log = logging.getLogger("toolrelay.pending")

DEFAULT_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class StdioResult:
    success: bool
    output: str | None = None
    error: str | None = None


@dataclass
class PendingStdioRequest:
    request_id: str
    server_id: str
    tool: str
    args: dict[str, Any]
    future: asyncio.Future[StdioResult]
    timer: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.time)


class PendingRequestLedger:
    """Correlates tool requests with results delivered later on another channel.

    Every entry ends exactly once: ``resolve``, ``cancel`` or the timeout
    each remove the entry first, so whichever runs second finds nothing.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingStdioRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def create(
        self,
        server_id: str,
        tool: str,
        args: dict[str, Any] | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> tuple[str, asyncio.Future[StdioResult]]:
        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        future: asyncio.Future[StdioResult] = loop.create_future()
        entry = PendingStdioRequest(
            request_id=request_id,
            server_id=server_id,
            tool=tool,
            args=dict(args or {}),
            future=future,
        )
        entry.timer = loop.call_later(timeout_ms / 1000, self._expire, request_id, timeout_ms)
        self._pending[request_id] = entry
        # A waiter that gives up (cancelled await) releases its entry too.
        future.add_done_callback(lambda f: self._take(request_id) if f.cancelled() else None)
        log.debug("created %s for %s/%s", request_id, server_id, tool)
        return request_id, future

    def get(self, request_id: str) -> PendingStdioRequest | None:
        return self._pending.get(request_id)

    def resolve(self, request_id: str, result: StdioResult) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def cancel(self, request_id: str, reason: str = "Cancelled") -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(ToolRequestError(reason))
        return True

    def cancel_all(self, reason: str = "Cancelled") -> int:
        count = 0
        for request_id in list(self._pending):
            count += self.cancel(request_id, reason)
        return count

    def _take(self, request_id: str) -> PendingStdioRequest | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: str, timeout_ms: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        log.warning("request %s (%s/%s) timed out after %sms", request_id, entry.server_id, entry.tool, timeout_ms)
        if not entry.future.done():
            entry.future.set_exception(ToolTimeoutError(f"Stdio tool request timed out after {timeout_ms}ms"))
