from __future__ import annotations

import asyncio
import json
import sys
import tempfile
import threading
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from toolrelay.debug_log import DebugLog
from toolrelay.pending import PendingStdioRequest, StdioResult
from toolrelay.state import CanonicalToolCall, ToolContext
from toolrelay.tools.errors import (
    ToolAbortedError,
    ToolConfigError,
    ToolInputError,
    ToolRequestError,
    ToolServerError,
)
from toolrelay.tools.manager import ToolManager, format_tool_result
from toolrelay.tools.sandbox import Workspace


class _FakeStdio:
    """Stands in for StdioServerManager with one running server."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple[str, str, dict]] = []
        self.stopped = False

    def running(self) -> list[str]:
        return ["fs"]

    def is_running(self, server_id: str) -> bool:
        return server_id == "fs"

    async def list_tools(self, server_id: str) -> list[dict]:
        return [{"name": "stat", "description": "Stat a path", "inputSchema": {"type": "object"}}]

    async def call_tool(self, server_id: str, name: str, arguments: dict) -> dict:
        self.calls.append((server_id, name, arguments))
        await asyncio.sleep(self.delay)
        return {"content": [{"type": "text", "text": "line 1"}, {"type": "text", "text": "line 2"}]}

    async def stop_all(self) -> None:
        self.stopped = True


class TestFormatToolResult(unittest.TestCase):
    def test_joins_text_blocks(self) -> None:
        output = format_tool_result({"content": [{"type": "text", "text": "a"}, {"type": "image", "data": ""}]})
        self.assertEqual(output.text, "a\n[image]")

    def test_is_error_raises(self) -> None:
        with self.assertRaises(ToolServerError):
            format_tool_result({"content": [{"type": "text", "text": "bad"}], "isError": True})

    def test_structured_content_preferred(self) -> None:
        output = format_tool_result({"content": [], "structuredContent": {"k": 1}})
        self.assertEqual(output.structured, {"k": 1})


class TestToolManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.log_path = self.root / "logs" / "mcp-debug.log"
        self.stdio = _FakeStdio()
        self.manager = ToolManager(
            [Workspace(name="proj", root_path=str(self.root))],
            stdio=self.stdio,
            debug_log=DebugLog(self.log_path),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_routes_local_tools(self) -> None:
        await self.manager.execute("write_file", {"path": "a.txt", "content": "hi"})
        output = await self.manager.execute("read_file", {"path": "a.txt"})
        self.assertEqual(output.structured["content"], "hi")

    async def test_routes_stdio_tools_after_refresh(self) -> None:
        with self.assertRaises(ToolConfigError):
            await self.manager.execute("stat", {})
        await self.manager.refresh_catalog()
        output = await self.manager.execute("stat", {"path": "x"})
        self.assertEqual(output.text, "line 1\nline 2")
        self.assertEqual(self.stdio.calls, [("fs", "stat", {"path": "x"})])

    async def test_unknown_tool(self) -> None:
        with self.assertRaises(ToolConfigError):
            await self.manager.execute("does_not_exist", {})

    async def test_missing_file_is_input_error(self) -> None:
        with self.assertRaises(ToolInputError):
            await self.manager.execute("read_file", {"path": "missing.txt"})

    async def test_local_list_tools_sees_whole_catalog(self) -> None:
        await self.manager.refresh_catalog()
        output = await self.manager.execute("local_list_tools", {})
        names = {t["name"] for t in output.structured["tools"]}
        self.assertIn("stat", names)
        self.assertIn("read_file", names)

    async def test_abort_cancels_in_flight_call(self) -> None:
        self.stdio.delay = 5.0
        await self.manager.refresh_catalog()
        abort = asyncio.Event()
        task = asyncio.create_task(self.manager.execute("stat", {}, ToolContext(abort=abort)))
        await asyncio.sleep(0.05)
        abort.set()
        with self.assertRaises(ToolAbortedError):
            await asyncio.wait_for(task, timeout=1.0)
        self.assertFalse(self.stdio.stopped)

    async def test_abort_already_set(self) -> None:
        abort = asyncio.Event()
        abort.set()
        with self.assertRaises(ToolAbortedError):
            await self.manager.execute("list_files", {}, ToolContext(abort=abort))

    async def test_context_workspaces_override(self) -> None:
        with tempfile.TemporaryDirectory() as other:
            (Path(other) / "only-here.txt").write_text("x", encoding="utf-8")
            ctx = ToolContext(workspaces=[Workspace(name="other", root_path=other)])
            output = await self.manager.execute("list_files", {}, ctx)
            self.assertEqual([e["path"] for e in output.structured["entries"]], ["only-here.txt"])

    async def test_context_workspaces_route_without_configured_workspaces(self) -> None:
        bare = ToolManager(stdio=self.stdio)
        with self.assertRaises(ToolConfigError):
            await bare.execute("list_files", {})
        (self.root / "given.txt").write_text("x", encoding="utf-8")
        ctx = ToolContext(workspaces=[Workspace(name="given", root_path=str(self.root))])
        output = await bare.execute("list_files", {}, ctx)
        self.assertIn("given.txt", [e["path"] for e in output.structured["entries"]])
        self.assertIsNone(bare.catalog.route("list_files"))

    async def test_debug_log_records_calls(self) -> None:
        await self.manager.execute("list_files", {})
        with self.assertRaises(ToolConfigError):
            await self.manager.execute("nope", {})
        rows = [json.loads(line) for line in self.log_path.read_text(encoding="utf-8").splitlines()]
        events = [r["event"] for r in rows]
        self.assertEqual(events, ["tool_call", "tool_result", "tool_unknown"])
        self.assertTrue(all("ts" in r for r in rows))

    async def test_scheduler_runs_parsed_calls(self) -> None:
        calls = [
            CanonicalToolCall(id="c0", name="write_file", arguments={"path": "b.txt", "content": "x"}),
            CanonicalToolCall(id="c1", name="nope", arguments={}),
        ]
        updates = []
        results = await self.manager.scheduler(on_update=updates.append).run_batch(calls)
        self.assertTrue(results[0].ok)
        self.assertFalse(results[1].ok)
        self.assertEqual(results[1].attempts, 1)
        self.assertEqual(updates[-1].kind, "failed")
        self.assertTrue((self.root / "b.txt").exists())

    async def test_system_prompt_lists_tools(self) -> None:
        prompt = self.manager.system_prompt("NousResearch/Hermes-3")
        self.assertIn("- **read_file**", prompt)
        self.assertIn("<tool_call>", prompt)


class TestDelegatedExecution(unittest.IsolatedAsyncioTestCase):
    async def test_result_delivered_through_ledger(self) -> None:
        handed: list[PendingStdioRequest] = []
        manager = ToolManager(delegate=handed.append)
        manager.register_delegated("desktop", [{"name": "screenshot", "inputSchema": {"type": "object"}}])

        task = asyncio.create_task(manager.execute("screenshot", {"region": "all"}))
        await asyncio.sleep(0)
        self.assertEqual(len(handed), 1)
        self.assertEqual(handed[0].args, {"region": "all"})
        self.assertTrue(manager.ledger.resolve(handed[0].request_id, StdioResult(success=True, output="saved")))
        output = await task
        self.assertEqual(output.text, "saved")

    async def test_failure_result_raises(self) -> None:
        handed: list[PendingStdioRequest] = []
        manager = ToolManager(delegate=handed.append)
        manager.register_delegated("desktop", [{"name": "screenshot"}])
        task = asyncio.create_task(manager.execute("screenshot", {}))
        await asyncio.sleep(0)
        manager.ledger.resolve(handed[0].request_id, StdioResult(success=False, error="no display"))
        with self.assertRaises(ToolRequestError) as ctx:
            await task
        self.assertEqual(str(ctx.exception), "no display")

    async def test_abort_releases_ledger_entry(self) -> None:
        handed: list[PendingStdioRequest] = []
        manager = ToolManager(delegate=handed.append)
        manager.register_delegated("desktop", [{"name": "screenshot"}])
        abort = asyncio.Event()
        task = asyncio.create_task(manager.execute("screenshot", {}, ToolContext(abort=abort)))
        await asyncio.sleep(0.01)
        abort.set()
        with self.assertRaises(ToolAbortedError):
            await task
        self.assertEqual(len(manager.ledger), 0)


class TestAsyncDebugLog(unittest.IsolatedAsyncioTestCase):
    async def test_awrite_appends_off_the_event_loop_thread(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            debug = DebugLog(Path(tmp) / "logs" / "mcp-debug.log")
            threads: list[int] = []
            append = debug._append

            def recording_append(line: str) -> None:
                threads.append(threading.get_ident())
                append(line)

            debug._append = recording_append  # type: ignore[method-assign]
            await debug.awrite("tool_call", tool="read_file", args={"path": "a"})
            self.assertEqual(len(threads), 1)
            self.assertNotEqual(threads[0], threading.get_ident())
            rows = debug.read()
            self.assertEqual(rows[0]["event"], "tool_call")
            self.assertEqual(rows[0]["args"], {"path": "a"})

    async def test_awrite_disabled_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "mcp-debug.log"
            await DebugLog(path, enabled=False).awrite("a")
            self.assertFalse(path.exists())


class TestDebugLog(unittest.TestCase):
    def test_write_failure_warns_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "file"
            blocker.write_text("", encoding="utf-8")
            debug = DebugLog(blocker / "logs" / "mcp-debug.log")
            with self.assertLogs("toolrelay.debug_log", level="WARNING") as logs:
                debug.write("a")
                debug.write("b")
            self.assertEqual(len(logs.records), 1)

    def test_disabled_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "mcp-debug.log"
            DebugLog(path, enabled=False).write("a")
            self.assertFalse(path.exists())


if __name__ == "__main__":
    unittest.main()
