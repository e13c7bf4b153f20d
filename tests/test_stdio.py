from __future__ import annotations

import asyncio
import sys
import textwrap
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from toolrelay.stdio import StdioServerManager, check_server
from toolrelay.tools.errors import ToolConfigError, ToolProcessError, ToolServerError, ToolTimeoutError

# A small line-delimited JSON-RPC tool server. argv[1] picks the behaviour:
#   normal  answers everything; "slow" calls reply after arguments.delay seconds
#   silent  never answers initialize
#   crash   exits with code 3 on the first tools/call
FAKE_SERVER = textwrap.dedent(
    """
    import json, sys, threading, time

    mode = sys.argv[1] if len(sys.argv) > 1 else "normal"
    lock = threading.Lock()

    def send(obj):
        with lock:
            sys.stdout.write(json.dumps(obj) + "\\n")
            sys.stdout.flush()

    sys.stdout.write("booting, not json\\n")
    sys.stdout.flush()

    for raw in sys.stdin:
        raw = raw.strip()
        if not raw:
            continue
        msg = json.loads(raw)
        method = msg.get("method")
        mid = msg.get("id")
        if method == "initialize":
            if mode == "silent":
                continue
            send({"jsonrpc": "2.0", "id": mid, "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0.1"},
            }})
        elif method == "notifications/initialized":
            continue
        elif method == "tools/list":
            send({"jsonrpc": "2.0", "id": mid, "result": {"tools": [
                {"name": "echo", "description": "Echo text", "inputSchema": {"type": "object"}},
                {"name": "slow", "description": "Reply later", "inputSchema": {"type": "object"}},
            ]}})
        elif method == "tools/call":
            if mode == "crash":
                sys.exit(3)
            params = msg.get("params") or {}
            name = params.get("name")
            args = params.get("arguments") or {}
            if name == "fail":
                send({"jsonrpc": "2.0", "id": mid, "error": {"code": -32000, "message": "tool exploded"}})
                continue
            result = {"content": [{"type": "text", "text": args.get("text", name)}]}
            delay = float(args.get("delay", 0))
            if delay:
                threading.Timer(delay, send, args=({"jsonrpc": "2.0", "id": mid, "result": result},)).start()
            else:
                send({"jsonrpc": "2.0", "id": mid, "result": result})
    """
)


def _args(mode: str = "normal") -> list[str]:
    return ["-c", FAKE_SERVER, mode]


class TestStdioServerManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.manager = StdioServerManager(handshake_timeout=5.0, request_timeout=5.0)

    async def asyncTearDown(self) -> None:
        await self.manager.stop_all()

    async def test_handshake_and_list_tools(self) -> None:
        result = await self.manager.start_server("fake", sys.executable, _args())
        self.assertFalse(result.already_running)
        self.assertEqual(result.server_info.get("name"), "fake")
        self.assertTrue(self.manager.is_running("fake"))
        tools = await self.manager.list_tools("fake")
        self.assertEqual([t["name"] for t in tools], ["echo", "slow"])

    async def test_second_start_is_noop(self) -> None:
        await self.manager.start_server("fake", sys.executable, _args())
        again = await self.manager.start_server("fake", sys.executable, _args())
        self.assertTrue(again.already_running)
        self.assertEqual(self.manager.running(), ["fake"])

    async def test_concurrent_starts_spawn_one_process(self) -> None:
        real_exec = asyncio.create_subprocess_exec
        with mock.patch("asyncio.create_subprocess_exec", side_effect=real_exec) as spawn:
            first, second = await asyncio.gather(
                self.manager.start_server("fake", sys.executable, _args()),
                self.manager.start_server("fake", sys.executable, _args()),
            )
        self.assertEqual(spawn.call_count, 1)
        self.assertEqual(sorted([first.already_running, second.already_running]), [False, True])
        self.assertEqual(second.server_info, first.server_info)
        self.assertEqual(self.manager.running(), ["fake"])

    async def test_concurrent_starts_share_failure(self) -> None:
        manager = StdioServerManager(handshake_timeout=0.3)
        results = await asyncio.gather(
            manager.start_server("silent", sys.executable, _args("silent")),
            manager.start_server("silent", sys.executable, _args("silent")),
            return_exceptions=True,
        )
        self.assertTrue(all(isinstance(r, ToolTimeoutError) for r in results))
        self.assertEqual(manager.running(), [])
        await manager.start_server("after-failure", sys.executable, _args())
        self.assertEqual(manager.running(), ["after-failure"])
        await manager.stop_all()

    async def test_out_of_order_responses_match_by_id(self) -> None:
        await self.manager.start_server("fake", sys.executable, _args())
        slow = asyncio.create_task(self.manager.call_tool("fake", "slow", {"text": "A", "delay": 0.5}))
        await asyncio.sleep(0.05)
        fast = asyncio.create_task(self.manager.call_tool("fake", "echo", {"text": "B"}))
        done, _ = await asyncio.wait({slow, fast}, return_when=asyncio.FIRST_COMPLETED)
        self.assertEqual(done, {fast})
        self.assertEqual(fast.result()["content"][0]["text"], "B")
        self.assertEqual((await slow)["content"][0]["text"], "A")

    async def test_error_response_rejects_waiter(self) -> None:
        await self.manager.start_server("fake", sys.executable, _args())
        with self.assertRaises(ToolServerError) as ctx:
            await self.manager.call_tool("fake", "fail", {})
        self.assertIn("tool exploded", str(ctx.exception))
        self.assertEqual(ctx.exception.code, -32000)

    async def test_request_timeout_then_late_response_dropped(self) -> None:
        await self.manager.start_server("fake", sys.executable, _args())
        with self.assertRaises(ToolTimeoutError):
            await self.manager.send_request(
                "fake", "tools/call", {"name": "slow", "arguments": {"delay": 0.4}}, timeout=0.1
            )
        await asyncio.sleep(0.6)
        result = await self.manager.call_tool("fake", "echo", {"text": "still alive"})
        self.assertEqual(result["content"][0]["text"], "still alive")

    async def test_handshake_timeout_leaves_no_handle(self) -> None:
        manager = StdioServerManager(handshake_timeout=0.5)
        with self.assertRaises(ToolTimeoutError):
            await manager.start_server("silent", sys.executable, _args("silent"))
        self.assertFalse(manager.is_running("silent"))
        self.assertEqual(manager.running(), [])
        stopped = await manager.stop_server("silent")
        self.assertTrue(stopped.already_stopped)

    async def test_exit_fails_pending_calls(self) -> None:
        await self.manager.start_server("crashy", sys.executable, _args("crash"))
        with self.assertRaises(ToolProcessError) as ctx:
            await self.manager.call_tool("crashy", "echo", {})
        self.assertEqual(ctx.exception.exit_code, 3)
        await asyncio.sleep(0.1)
        self.assertFalse(self.manager.is_running("crashy"))

    async def test_spawn_failure(self) -> None:
        with self.assertRaises(ToolProcessError):
            await self.manager.start_server("ghost", "/nonexistent/toolrelay-binary")
        self.assertEqual(self.manager.running(), [])

    async def test_stop_missing_server_reports_already_stopped(self) -> None:
        result = await self.manager.stop_server("never-started")
        self.assertTrue(result.already_stopped)

    async def test_stop_removes_handle(self) -> None:
        await self.manager.start_server("fake", sys.executable, _args())
        result = await self.manager.stop_server("fake")
        self.assertFalse(result.already_stopped)
        with self.assertRaises(ToolConfigError):
            await self.manager.list_tools("fake")

    async def test_env_is_passed_through(self) -> None:
        script = textwrap.dedent(
            """
            import json, os, sys
            for raw in sys.stdin:
                msg = json.loads(raw)
                if msg.get("method") == "initialize":
                    print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": {
                        "capabilities": {}, "serverInfo": {"name": os.environ.get("FAKE_NAME", "")}}}), flush=True)
            """
        )
        result = await self.manager.start_server("env", sys.executable, ["-c", script], {"FAKE_NAME": "from-env"})
        self.assertEqual(result.server_info["name"], "from-env")


class TestCheckServer(unittest.IsolatedAsyncioTestCase):
    async def test_lists_tools_once(self) -> None:
        tools = await check_server(sys.executable, _args(), timeout=5.0)
        self.assertEqual({t["name"] for t in tools}, {"echo", "slow"})

    async def test_silent_server_times_out(self) -> None:
        with self.assertRaises(ToolTimeoutError):
            await check_server(sys.executable, _args("silent"), timeout=0.5)


if __name__ == "__main__":
    unittest.main()
