from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Literal, Sequence

from .state import CanonicalToolCall, ToolOutput
from .tools.errors import ToolAbortedError, ToolRequestError

log = logging.getLogger("toolrelay.scheduler")

UpdateKind = Literal["queued", "started", "retry", "finished", "failed"]


@dataclass(frozen=True)
class ToolUpdate:
    kind: UpdateKind
    call: CanonicalToolCall
    output: ToolOutput | None = None
    error: str | None = None
    attempt: int = 1
    duration: float = 0.0


@dataclass(frozen=True)
class ToolResult:
    call: CanonicalToolCall
    ok: bool
    output: ToolOutput | None
    attempts: int
    duration: float
    error: str | None = None
    aborted: bool = False


class ToolScheduler:
    def __init__(
        self,
        runner: Callable[[CanonicalToolCall], Awaitable[ToolOutput]],
        *,
        on_update: Callable[[ToolUpdate], None] | None = None,
        concurrency: int = 1,
        max_attempts: int = 4,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self.runner = runner
        self.on_update = on_update
        self.concurrency = max(1, min(concurrency, 2))
        self.max_attempts = max_attempts
        self.sleep = sleep or asyncio.sleep
        self.jitter = jitter or random.random

    async def run_batch(self, calls: Sequence[CanonicalToolCall]) -> list[ToolResult]:
        if not calls:
            return []
        queue: asyncio.Queue[tuple[int, CanonicalToolCall]] = asyncio.Queue()
        results: dict[int, ToolResult] = {}
        for index, call in enumerate(calls):
            queue.put_nowait((index, call))
            self._emit(ToolUpdate("queued", call))
            log.debug("queued [%s] %s", call.name, self._format_args(call.arguments))

        workers = [asyncio.create_task(self._worker(queue, results)) for _ in range(self.concurrency)]
        try:
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        return [results[i] for i in range(len(calls)) if i in results]

    async def stream(self, calls: Sequence[CanonicalToolCall]) -> AsyncIterator[ToolUpdate]:
        """Run ``calls`` and yield every update as it happens."""
        updates: asyncio.Queue[ToolUpdate | None] = asyncio.Queue()
        previous = self.on_update

        def forward(update: ToolUpdate) -> None:
            if previous:
                previous(update)
            updates.put_nowait(update)

        self.on_update = forward
        batch = asyncio.create_task(self.run_batch(calls))
        batch.add_done_callback(lambda _: updates.put_nowait(None))
        try:
            while True:
                update = await updates.get()
                if update is None:
                    break
                yield update
            await batch
        finally:
            self.on_update = previous
            if not batch.done():
                batch.cancel()
                await asyncio.gather(batch, return_exceptions=True)

    async def _worker(
        self,
        queue: asyncio.Queue[tuple[int, CanonicalToolCall]],
        results: dict[int, ToolResult],
    ) -> None:
        while True:
            index, call = await queue.get()
            try:
                results[index] = await self._run_with_retry(call)
            finally:
                queue.task_done()

    async def _run_with_retry(self, call: CanonicalToolCall) -> ToolResult:
        start = time.monotonic()
        attempt = 1
        while True:
            self._emit(ToolUpdate("started", call, attempt=attempt))
            try:
                output = await self.runner(call)
                duration = time.monotonic() - start
                log.info("success [%s] %.2fs", call.name, duration)
                self._emit(ToolUpdate("finished", call, output=output, attempt=attempt, duration=duration))
                return ToolResult(call=call, ok=True, output=output, attempts=attempt, duration=duration)
            except ToolAbortedError as exc:
                duration = time.monotonic() - start
                self._emit(ToolUpdate("failed", call, error=str(exc), attempt=attempt, duration=duration))
                return ToolResult(
                    call=call, ok=False, output=None, attempts=attempt, duration=duration, error=str(exc), aborted=True
                )
            except Exception as exc:  # noqa: BLE001
                retryable = isinstance(exc, ToolRequestError) and exc.retryable
                status = getattr(exc, "status_code", None)
                reason = f"{status}" if status else type(exc).__name__
                if retryable and attempt < self.max_attempts:
                    delay = self._backoff_delay(attempt)
                    log.info("retry [%s] attempt %d in %.2fs (%s)", call.name, attempt + 1, delay, reason)
                    self._emit(ToolUpdate("retry", call, error=str(exc), attempt=attempt + 1))
                    await self.sleep(delay)
                    attempt += 1
                    continue
                duration = time.monotonic() - start
                log.warning("fail [%s] %.2fs (%s)", call.name, duration, reason)
                self._emit(ToolUpdate("failed", call, error=str(exc), attempt=attempt, duration=duration))
                return ToolResult(
                    call=call, ok=False, output=None, attempts=attempt, duration=duration, error=str(exc)
                )

    def _backoff_delay(self, attempt: int) -> float:
        base = 0.5 * (2 ** (attempt - 1))
        capped = min(base, 8.0)
        jitter = self.jitter() * 0.25 * capped
        return capped + jitter

    def _format_args(self, args: dict[str, object]) -> str:
        try:
            return json.dumps(args, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(args)

    def _emit(self, update: ToolUpdate) -> None:
        if self.on_update:
            self.on_update(update)
