from __future__ import annotations

import re
import tempfile
import unittest
from pathlib import Path

from usbide.incidents.log import IncidentLog, Severity, format_entry, redact


class IncidentLogTests(unittest.TestCase):
    def test_appends_markdown_blocks(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log = IncidentLog(Path(td) / "bug.md")
            self.assertTrue(log.record(Severity.ERROR, "exec", "Codex exited with code 1", "exit_code=1"))
            self.assertTrue(log.record("warning", "install", "npm printed a warning"))
            text = (Path(td) / "bug.md").read_text(encoding="utf-8")
            blocks = [b for b in text.split("## ") if b.strip()]
            self.assertEqual(len(blocks), 2)
            self.assertRegex(blocks[0], r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
            self.assertIn("- level: error", blocks[0])
            self.assertIn("- context: exec", blocks[0])
            self.assertIn("- message: Codex exited with code 1", blocks[0])
            self.assertIn("- details: exit_code=1", blocks[0])
            self.assertIn("- level: warning", blocks[1])
            self.assertNotIn("- details:", blocks[1])

    def test_unknown_severity_recorded_as_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log = IncidentLog(Path(td) / "bug.md")
            log.record("catastrophic", "exec", "boom")
            self.assertIn("- level: error", (Path(td) / "bug.md").read_text(encoding="utf-8"))

    def test_never_contains_credentials(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log = IncidentLog(Path(td) / "bug.md")
            log.record(
                Severity.ERROR,
                "exec",
                "auth failed for sk-abcdefghijklmnop1234",
                "OPENAI_API_KEY=sk-zzzzzzzzzzzzzzzzzz Authorization: Bearer abc.def.ghi token=hunter2",
            )
            text = (Path(td) / "bug.md").read_text(encoding="utf-8")
            for secret in ("sk-abcdefghijklmnop1234", "sk-zzzzzzzzzzzzzzzzzz", "abc.def.ghi", "hunter2"):
                self.assertNotIn(secret, text)
            self.assertIn("[REDACTED", text)

    def test_multiline_details_stay_in_one_entry(self) -> None:
        entry = format_entry(Severity.INFO, "login", "line one\nline two", "a\nb", timestamp="2026-01-01T00:00:00Z")
        self.assertEqual(
            entry,
            "## 2026-01-01T00:00:00Z\n- level: info\n- context: login\n- message: line one line two\n- details: a b\n\n",
        )

    def test_write_failure_is_swallowed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            # A directory where the file should be makes open() fail.
            target = Path(td) / "bug.md"
            target.mkdir()
            log = IncidentLog(target)
            with self.assertLogs("usbide.incidents", level="WARNING") as cm:
                ok = log.record(Severity.ERROR, "exec", "message")
            self.assertFalse(ok)
            self.assertTrue(any("incident log write failed" in m for m in cm.output))

    def test_redact_keeps_paths_readable(self) -> None:
        text = redact("spawn failed for /media/usb/tools/node/bin/node")
        self.assertEqual(text, "spawn failed for /media/usb/tools/node/bin/node")
        self.assertTrue(re.search(r"api_key=\[REDACTED\]", redact("api_key=abcd")))


if __name__ == "__main__":
    unittest.main()
