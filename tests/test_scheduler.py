from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from intel_scan.rules.models import ScanConfig, ScanSettings
from intel_scan.services.run_lock import scan_lock
from intel_scan.workers.scheduler_worker import JOB_ID, SchedulerWorker, parse_scan_time


CONFIG = ScanConfig(scan=ScanSettings(timezone="Europe/London", scan_time="07:15"))


class SchedulerWorkerTests(unittest.TestCase):
    def test_parse_scan_time(self) -> None:
        self.assertEqual(parse_scan_time("07:15"), (7, 15))
        self.assertEqual(parse_scan_time("23"), (23, 0))
        self.assertEqual(parse_scan_time(""), (7, 0))

    def test_run_job_records_summary(self) -> None:
        calls: list[dict] = []

        def runner(event: dict) -> dict:
            calls.append(event)
            return {"ok": True, "date": "2025-03-10", "report_id": 3}

        with tempfile.TemporaryDirectory() as td:
            w = SchedulerWorker(CONFIG, runner=runner, lock_path=Path(td) / "scan.lock")
            w.run_job(trigger="manual")
        self.assertEqual(calls, [{}])
        self.assertEqual(w.last_summary["report_id"], 3)

    def test_run_job_failure_is_logged_not_raised(self) -> None:
        def runner(event: dict) -> dict:
            raise RuntimeError("feed exploded")

        with tempfile.TemporaryDirectory() as td:
            w = SchedulerWorker(CONFIG, runner=runner, lock_path=Path(td) / "scan.lock")
            with self.assertLogs("intel_scan.workers.scheduler_worker", level="ERROR") as logs:
                w.run_job()
        self.assertIn("feed exploded", "\n".join(logs.output))
        self.assertIsNone(w.last_summary)

    def test_overlapping_run_is_skipped(self) -> None:
        calls: list[dict] = []
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "scan.lock"
            w = SchedulerWorker(CONFIG, runner=lambda e: calls.append(e) or {}, lock_path=lock_path)
            with scan_lock(lock_path, trigger="cli"):
                with self.assertLogs("intel_scan.workers.scheduler_worker", level="WARNING"):
                    w.run_job()
        self.assertEqual(calls, [])

    def test_schedule_and_heartbeat(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            hb = Path(td) / "hb.json"
            w = SchedulerWorker(CONFIG, runner=lambda e: {}, lock_path=Path(td) / "scan.lock", heartbeat_path=hb)
            w.schedule()
            w.scheduler.start(paused=True)
            try:
                job = w.scheduler.get_job(JOB_ID)
                self.assertIsNotNone(job)
                self.assertEqual(str(job.trigger.timezone), "Europe/London")
                w._write_heartbeat()
                payload = json.loads(hb.read_text(encoding="utf-8"))
            finally:
                w.scheduler.shutdown(wait=False)
        self.assertEqual(payload["scan_time"], "07:15")
        self.assertEqual(payload["timezone"], "Europe/London")
        self.assertIn("next_run_time", payload)


if __name__ == "__main__":
    unittest.main()
