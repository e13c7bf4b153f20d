import sys
import unittest
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from toolrelay.catalog import BASE_SYSTEM_PROMPT, ServerTools, build_catalog, build_tool_preprompt
from toolrelay.state import ToolDescriptor
from toolrelay.tools.sandbox import Workspace


def _tool(name: str, description: str = "") -> ToolDescriptor:
    return ToolDescriptor(name=name, description=description)


class TestBuildCatalog(unittest.TestCase):
    def test_local_tools_come_first(self) -> None:
        ws = [Workspace(name="proj", root_path="/ws")]
        catalog = build_catalog(ws, [ServerTools("web", [_tool("fetch")])])
        names = [t.name for t in catalog.tools]
        self.assertEqual(names[0], "local_list_tools")
        self.assertEqual(names[-1], "fetch")
        self.assertEqual(catalog.route("fetch").server, "web")
        self.assertEqual(catalog.route("read_file").server, "local")

    def test_collision_keeps_first_registration(self) -> None:
        with self.assertLogs("toolrelay.catalog", level="WARNING"):
            catalog = build_catalog(
                [],
                [
                    ServerTools("fs", [_tool("read", "first")], is_stdio=True),
                    ServerTools("web", [_tool("read", "second")]),
                ],
            )
        self.assertEqual(catalog.route("read").server, "fs")
        self.assertTrue(catalog.route("read").is_stdio)
        self.assertEqual(catalog.descriptor("read").description, "first")
        self.assertEqual([t.name for t in catalog.tools].count("read"), 1)

    def test_entries_flag_local_and_stdio(self) -> None:
        catalog = build_catalog([], [ServerTools("fs", [_tool("read")], is_stdio=True)])
        entries = {e.name: e.as_dict() for e in catalog.entries()}
        self.assertTrue(entries["local_list_tools"]["isLocal"])
        self.assertTrue(entries["read"]["isStdio"])
        self.assertFalse(entries["read"]["isLocal"])

    def test_openai_tools_shape(self) -> None:
        catalog = build_catalog([], [ServerTools("web", [_tool("fetch", "Fetch a URL")])])
        fetch = catalog.openai_tools()[-1]
        self.assertEqual(fetch["type"], "function")
        self.assertEqual(fetch["function"]["name"], "fetch")


class TestPreprompt(unittest.TestCase):
    def test_deterministic_regardless_of_input_order(self) -> None:
        tools_a = [_tool("zeta", "z"), _tool("alpha", "a"), _tool("beta", "b")]
        tools_b = list(reversed(tools_a))
        catalog = build_catalog([], [ServerTools("srv2", tools_a[:1]), ServerTools("srv1", tools_a[1:])])
        day = date(2025, 3, 7)
        first = build_tool_preprompt(tools_a, catalog.mapping, today=day)
        second = build_tool_preprompt(tools_b, catalog.mapping, today=day)
        self.assertEqual(first, second)
        self.assertLess(first.index("### MCP Server: srv1"), first.index("### MCP Server: srv2"))
        self.assertLess(first.index("- **alpha**: a"), first.index("- **beta**: b"))
        self.assertIn("Today's date: March 7, 2025.", first)

    def test_no_tools_is_base_prompt(self) -> None:
        prompt = build_tool_preprompt([], today=date(2025, 1, 1))
        self.assertTrue(prompt.startswith(BASE_SYSTEM_PROMPT))
        self.assertNotIn("# TOOLS YOU CAN USE", prompt)

    def test_workspace_section(self) -> None:
        ws = [Workspace(name="proj", root_path="/ws", is_repo=True)]
        catalog = build_catalog(ws)
        prompt = build_tool_preprompt(catalog.tools, catalog.mapping, ws, today=date(2025, 1, 1))
        self.assertIn("## Workspace Folders", prompt)
        self.assertIn("- **proj**: `/ws` (git repo)", prompt)
        self.assertIn("### MCP Server: local", prompt)

    def test_format_description_included(self) -> None:
        prompt = build_tool_preprompt([_tool("x")], {}, today=date(2025, 1, 1), format_description="USE TAGS")
        self.assertIn("USE TAGS", prompt)
        self.assertIn("### MCP Server: unknown", prompt)


if __name__ == "__main__":
    unittest.main()
