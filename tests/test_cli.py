from __future__ import annotations

import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from intel_scan.workers import cli


class CliTests(unittest.TestCase):
    def _run(self, argv: list[str]) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with patch("intel_scan.workers.cli.configure_logging"), redirect_stdout(out), redirect_stderr(err):
            code = cli.main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_usage_and_unknown_command(self) -> None:
        code, _, err = self._run([])
        self.assertEqual(code, 2)
        self.assertIn("Usage", err)
        code, _, err = self._run(["bogus"])
        self.assertEqual(code, 2)
        self.assertIn("Unknown command", err)

    def test_config_validate_repository_config(self) -> None:
        code, out, _ = self._run(["config:validate"])
        self.assertEqual(code, 0)
        body = json.loads(out)
        self.assertTrue(body["ok"])
        self.assertEqual(body["timezone"], "Europe/London")

    def test_config_error_exit_code(self) -> None:
        code, out, _ = self._run(["config:validate", "--config", "/nonexistent.yaml"])
        self.assertEqual(code, 10)
        self.assertEqual(json.loads(out)["error_code"], "CONFIG_001_NOT_FOUND")

    def test_scan_passes_lookback_and_no_send(self) -> None:
        seen: dict = {}

        def fake_handle_event(event, config, **kw):
            seen.update(event=event, **kw)
            return {"ok": True, "date": "2025-03-10"}

        with tempfile.TemporaryDirectory() as td:
            with patch("intel_scan.workers.cli.handle_event", side_effect=fake_handle_event), patch(
                "intel_scan.workers.cli.DEFAULT_LOCK_PATH", Path(td) / "scan.lock"
            ):
                code, out, _ = self._run(["scan", "--lookback-hours", "48", "--no-send", "--no-archive"])

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["date"], "2025-03-10")
        self.assertEqual(seen["event"], {"lookback_hours": "48"})
        self.assertFalse(seen["send"])
        self.assertIsNone(seen["email_sender"])
        self.assertIsNone(seen["report_store"])

    def test_reports_show_requires_date(self) -> None:
        code, _, err = self._run(["reports:show"])
        self.assertEqual(code, 2)
        self.assertIn("--date", err)

    def test_reports_list_rejects_bad_limit(self) -> None:
        with patch("intel_scan.workers.cli.ReportStore.from_env") as from_env:
            code, out, err = self._run(["reports:list", "--limit", "ten"])
            self.assertEqual(code, 2)
            self.assertIn("--limit", err)
            self.assertEqual(out, "")
            code, _, _ = self._run(["reports:list", "--limit", "0"])
            self.assertEqual(code, 2)
        from_env.assert_not_called()

    def test_unexpected_error_exit_code(self) -> None:
        with patch("intel_scan.workers.cli.ReportStore.from_env", side_effect=RuntimeError("db gone")):
            code, out, _ = self._run(["reports:list"])
        self.assertEqual(code, 12)
        self.assertEqual(json.loads(out)["error_code"], "SCAN_999_UNEXPECTED")


if __name__ == "__main__":
    unittest.main()
