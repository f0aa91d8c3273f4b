from __future__ import annotations

import io
import json
import logging
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

from usbide.__main__ import main
from usbide.core.log_setup import LOGGER_NAME


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.host_bin = self.td / "bin"
        self.host_bin.mkdir()
        self.root = self.td / "usb"
        self.root.mkdir()

    def tearDown(self) -> None:
        logger = logging.getLogger(LOGGER_NAME)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        self._td.cleanup()

    def _run(self, *argv: str, env: dict[str, str]) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with mock.patch.dict(os.environ, env, clear=True), redirect_stdout(out), redirect_stderr(err):
            rc = main(list(argv))
        return rc, out.getvalue(), err.getvalue()

    def test_resolve_json(self) -> None:
        (self.host_bin / "codex").write_text("", encoding="utf-8")
        rc, out, _ = self._run(
            "resolve", "--root", str(self.root), "--json", "--show-env",
            env={"PATH": str(self.host_bin), "OPENAI_API_KEY": "sk-never-shown-123456"},
        )
        self.assertEqual(rc, 0)
        obj = json.loads(out)
        self.assertEqual(obj["candidate"]["origin"], "path_fallback")
        self.assertTrue(obj["status_command"].endswith("login status"))
        self.assertEqual(obj["overrides"]["sandbox"], "workspace-write")
        self.assertNotIn("OPENAI_API_KEY", obj["env"])
        self.assertEqual(obj["env"]["CODEX_HOME"], "***")
        self.assertNotIn("sk-never-shown", out)
        # Portable layout is created on first use.
        self.assertTrue((self.root / "codex_home").is_dir())
        self.assertTrue((self.root / ".usbide" / "logs" / "usbide.log").exists())

    def test_resolve_not_found(self) -> None:
        rc, _, err = self._run("resolve", "--root", str(self.root), env={"PATH": str(self.host_bin)})
        self.assertEqual(rc, 2)
        self.assertIn("install", err.lower())

    def test_exec_empty_prompt(self) -> None:
        (self.host_bin / "codex").write_text("", encoding="utf-8")
        rc, out, _ = self._run("exec", "", "--root", str(self.root), "--json", env={"PATH": str(self.host_bin)})
        self.assertEqual(rc, 2)
        self.assertEqual(json.loads(out)["diagnostic"]["kind"], "invalid_arguments")

    def test_secret_extra_args_rejected(self) -> None:
        (self.host_bin / "codex").write_text("", encoding="utf-8")
        rc, _, err = self._run(
            "status", "--root", str(self.root),
            env={"PATH": str(self.host_bin), "USBIDE_CODEX_EXTRA_ARGS": "-c api_key=abc"},
        )
        self.assertEqual(rc, 2)
        self.assertNotIn("abc", err)


if __name__ == "__main__":
    unittest.main()
