import os
import sys
import tempfile
import unittest
from pathlib import Path

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from toolrelay.config import _validate, apply_env, load_config, save_config, workspaces_from_config


class TestValidate(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = _validate({})
        self.assertEqual(cfg["workspaces"], [])
        self.assertEqual(cfg["handshake_timeout"], 10.0)
        self.assertEqual(cfg["request_timeout"], 30.0)
        self.assertEqual(cfg["pending_timeout_ms"], 60_000)
        self.assertEqual(cfg["api_port"], 8765)
        self.assertTrue(cfg["debug_log"])

    def test_unknown_keys_dropped(self) -> None:
        self.assertNotIn("theme", _validate({"theme": "dark"}))

    def test_bad_values_fall_back(self) -> None:
        cfg = _validate({"handshake_timeout": -1, "api_port": 70000, "pending_timeout_ms": "soon"})
        self.assertEqual(cfg["handshake_timeout"], 10.0)
        self.assertEqual(cfg["api_port"], 8765)
        self.assertEqual(cfg["pending_timeout_ms"], 60_000)

    def test_cleans_server_lists(self) -> None:
        cfg = _validate(
            {
                "stdio_servers": [
                    {"id": "fs", "command": "npx", "args": ["-y", 3], "env": {"DEBUG": 1}},
                    {"id": "broken"},
                    "junk",
                ],
                "http_servers": [
                    {"name": "web", "url": "https://tools.example/mcp"},
                    {"name": "ftp", "url": "ftp://nope"},
                ],
                "workspaces": [{"path": "/srv/proj"}, {"name": "empty", "path": " "}],
            }
        )
        self.assertEqual(cfg["stdio_servers"], [{"id": "fs", "command": "npx", "args": ["-y", "3"], "env": {"DEBUG": "1"}}])
        self.assertEqual([s["name"] for s in cfg["http_servers"]], ["web"])
        self.assertEqual(cfg["workspaces"], [{"name": "proj", "path": "/srv/proj", "is_repo": False}])


class TestLoadSave(unittest.TestCase):
    def test_missing_file_is_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "config.yml"
            cfg = load_config(path)
            self.assertTrue(path.exists())
            self.assertEqual(cfg, _validate({}))

    def test_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yml"
            save_config({"api_port": 9000, "workspaces": [{"name": "p", "path": tmp}]}, path)
            cfg = load_config(path)
            self.assertEqual(cfg["api_port"], 9000)
            self.assertEqual(cfg["workspaces"][0]["path"], tmp)
            self.assertFalse(path.with_suffix(".tmp").exists())

    def test_invalid_file_is_rewritten(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yml"
            path.write_text("api_port: nope\nextra: 1\n", encoding="utf-8")
            load_config(path)
            saved = yaml.safe_load(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["api_port"], 8765)
            self.assertNotIn("extra", saved)


class TestApplyEnv(unittest.TestCase):
    def test_workspaces_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as repo, tempfile.TemporaryDirectory() as plain:
            (Path(repo) / ".git").mkdir()
            cfg = apply_env(_validate({}), {"TOOLRELAY_WORKSPACES": os.pathsep.join([repo, plain])})
            workspaces = workspaces_from_config(cfg)
            self.assertEqual([w.root_path for w in workspaces], [repo, plain])
            self.assertTrue(workspaces[0].is_repo)
            self.assertFalse(workspaces[1].is_repo)

    def test_mcp_servers_json(self) -> None:
        env = {"MCP_SERVERS": '[{"name": "web", "url": "http://localhost:9000/mcp", "headers": {"X-Key": "k"}}]'}
        cfg = apply_env(_validate({}), env)
        self.assertEqual(cfg["http_servers"], [{"name": "web", "url": "http://localhost:9000/mcp", "headers": {"X-Key": "k"}}])

    def test_bad_mcp_servers_json_is_ignored(self) -> None:
        base = _validate({})
        with self.assertLogs("toolrelay.config", level="WARNING"):
            cfg = apply_env(base, {"MCP_SERVERS": "{not json"})
        self.assertEqual(cfg["http_servers"], [])

    def test_empty_env_leaves_config(self) -> None:
        base = _validate({"workspaces": [{"name": "p", "path": "/srv/p"}]})
        self.assertEqual(apply_env(base, {}), base)


if __name__ == "__main__":
    unittest.main()
