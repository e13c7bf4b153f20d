import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from toolrelay.tools.shell import DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS, clamp_timeout_ms, is_dangerous


class TestDangerousCommands(unittest.TestCase):
    def test_blocks_known_destructive_commands(self) -> None:
        for command in (
            "rm -rf /",
            "rm -rf ~",
            "rm -fr /etc",
            "rm --no-preserve-root -rf /",
            "sudo apt-get remove python3",
            "ls && sudo reboot",
            "mkfs.ext4 /dev/sdb1",
            "dd if=/dev/zero of=/dev/sda bs=1M",
            "chmod 777 /etc/passwd",
            ":(){ :|:& };:",
            "kill -9 1",
        ):
            with self.subTest(command=command):
                self.assertTrue(is_dangerous(command))

    def test_allows_ordinary_commands(self) -> None:
        for command in (
            "ls -la",
            "rm -rf ./build",
            "rm -rf node_modules",
            "dd if=/dev/zero of=/dev/null count=1",
            "chmod 644 README.md",
            "echo sudo is just a word",
            "git status",
        ):
            with self.subTest(command=command):
                self.assertFalse(is_dangerous(command))


class TestClampTimeout(unittest.TestCase):
    def test_defaults_for_non_numbers(self) -> None:
        self.assertEqual(clamp_timeout_ms(None), DEFAULT_TIMEOUT_MS)
        self.assertEqual(clamp_timeout_ms("100"), DEFAULT_TIMEOUT_MS)
        self.assertEqual(clamp_timeout_ms(True), DEFAULT_TIMEOUT_MS)

    def test_clamps_range(self) -> None:
        self.assertEqual(clamp_timeout_ms(0), 1)
        self.assertEqual(clamp_timeout_ms(10 ** 9), MAX_TIMEOUT_MS)
        self.assertEqual(clamp_timeout_ms(1500), 1500)


if __name__ == "__main__":
    unittest.main()
