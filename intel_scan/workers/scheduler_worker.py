from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from intel_scan.rules.loader import load_scan_config
from intel_scan.rules.models import ScanConfig
from intel_scan.services.email_sender import SmtpEmailSender
from intel_scan.services.report_store import ReportStore
from intel_scan.services.run_lock import DEFAULT_LOCK_PATH, RunLockError, scan_lock
from intel_scan.utils.log import configure_logging
from intel_scan.workers.daily_scan import handle_event


logger = logging.getLogger(__name__)

JOB_ID = "daily_scan"


def parse_scan_time(value: str) -> tuple[int, int]:
    hh, _, mm = str(value or "07:00").partition(":")
    return int(hh), int(mm or 0)


class SchedulerWorker:
    def __init__(
        self,
        config: ScanConfig,
        *,
        runner: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
        lock_path: Path = DEFAULT_LOCK_PATH,
        heartbeat_path: Path | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or self._default_runner
        self.lock_path = lock_path
        self.heartbeat_path = heartbeat_path or Path("logs") / "scheduler_worker_heartbeat.json"
        self.tick_seconds = int(os.environ.get("SCHEDULER_TICK_SECONDS", "30") or "30")
        self.misfire_grace_seconds = int(os.environ.get("SCHEDULER_MISFIRE_GRACE_SECONDS", "3600") or "3600")
        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
            }
        )
        self.last_summary: dict[str, Any] | None = None

    def _default_runner(self, event: dict[str, Any]) -> dict[str, Any]:
        return handle_event(
            event,
            self.config,
            email_sender=SmtpEmailSender.from_env(),
            report_store=ReportStore.from_env(),
        )

    def run_job(self, trigger: str = "schedule") -> None:
        """One firing; failures are logged and never escape into the scheduler."""
        try:
            with scan_lock(self.lock_path, trigger=trigger):
                out = self.runner({})
            self.last_summary = out
            logger.info(
                "job done trigger=%s ok=%s date=%s report_id=%s",
                trigger,
                out.get("ok"),
                out.get("date"),
                out.get("report_id"),
            )
        except RunLockError as e:
            logger.warning("job skipped trigger=%s error=%s", trigger, e)
        except Exception as e:
            logger.exception("job failed trigger=%s error=%s", trigger, e)

    def schedule(self) -> None:
        hour, minute = parse_scan_time(self.config.scan.scan_time)
        trig = CronTrigger(hour=hour, minute=minute, timezone=self.config.scan.timezone)
        self.scheduler.add_job(
            self.run_job,
            trigger=trig,
            id=JOB_ID,
            kwargs={"trigger": "schedule"},
            misfire_grace_time=self.misfire_grace_seconds,
            replace_existing=True,
        )
        logger.info(
            "scheduled job=%s at=%02d:%02d tz=%s misfire_grace=%ss",
            JOB_ID,
            hour,
            minute,
            self.config.scan.timezone,
            self.misfire_grace_seconds,
        )

    def _write_heartbeat(self) -> None:
        self.heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
        job = self.scheduler.get_job(JOB_ID)
        nrt = getattr(job, "next_run_time", None) if job else None
        payload = {
            "ts": time.time(),
            "timezone": self.config.scan.timezone,
            "scan_time": self.config.scan.scan_time,
            "next_run_time": nrt.isoformat() if nrt else None,
            "last_summary": self.last_summary,
        }
        self.heartbeat_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def run_forever(self) -> None:
        logger.info("scheduler start tick_seconds=%d", self.tick_seconds)
        self.schedule()
        self.scheduler.start()
        try:
            while True:
                self._write_heartbeat()
                time.sleep(max(1, self.tick_seconds))
        except KeyboardInterrupt:
            logger.info("scheduler stop (keyboard interrupt)")
        finally:
            self.scheduler.shutdown(wait=False)


def main() -> None:
    configure_logging()
    SchedulerWorker(load_scan_config()).run_forever()


if __name__ == "__main__":
    main()
