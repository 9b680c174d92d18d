from __future__ import annotations

import json
import sys
from typing import Any

from intel_scan.rules.errors import ConfigError
from intel_scan.rules.loader import load_scan_config
from intel_scan.services.email_sender import SmtpEmailSender
from intel_scan.services.report_store import ReportStore
from intel_scan.services.run_lock import DEFAULT_LOCK_PATH, RunLockError, scan_lock
from intel_scan.utils.log import configure_logging
from intel_scan.web.admin_api import run_server
from intel_scan.workers.daily_scan import handle_event
from intel_scan.workers.scheduler_worker import SchedulerWorker


USAGE = (
    "Usage: python -m intel_scan.workers.cli "
    "scan|config:validate|reports:list|reports:show|serve|scheduler "
    "[--config PATH] [--lookback-hours N] [--no-send] [--no-archive] [--date YYYY-MM-DD] [--limit N]"
)


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def cmd_scan(argv: list[str]) -> int:
    cfg = load_scan_config(_get_opt(argv, "--config"))
    event: dict[str, Any] = {}
    lookback = _get_opt(argv, "--lookback-hours")
    if lookback:
        event["lookback_hours"] = lookback
    send = "--no-send" not in argv
    store = None if "--no-archive" in argv else ReportStore.from_env()
    try:
        with scan_lock(DEFAULT_LOCK_PATH, trigger="cli"):
            summary = handle_event(
                event,
                cfg,
                email_sender=SmtpEmailSender.from_env() if send else None,
                report_store=store,
                send=send,
            )
    except RunLockError as e:
        _print({"ok": False, "error_code": "SCAN_409_LOCKED", "error": str(e)})
        return 3
    _print(summary)
    return 0 if summary.get("ok") else 1


def cmd_config_validate(argv: list[str]) -> int:
    cfg = load_scan_config(_get_opt(argv, "--config"))
    _print(
        {
            "ok": True,
            "timezone": cfg.scan.timezone,
            "scan_time": cfg.scan.scan_time,
            "lookback_hours": cfg.scan.lookback_hours,
            "topics": [t.name for t in cfg.topics],
            "sources": len(cfg.sources),
            "category_rules": len(cfg.rules.category_rules),
            "scoring_signals": len(cfg.rules.scoring_signals),
            "allowlist_enforced": cfg.allowlist.enabled,
        }
    )
    return 0


def cmd_reports_list(argv: list[str]) -> int:
    raw = _get_opt(argv, "--limit") or "30"
    try:
        limit = int(raw)
    except ValueError:
        print(f"reports:list --limit must be an integer, got {raw!r}", file=sys.stderr)
        return 2
    if limit < 1:
        print(f"reports:list --limit must be positive, got {limit}", file=sys.stderr)
        return 2
    _print({"ok": True, "dates": ReportStore.from_env().list_dates(limit=limit)})
    return 0


def cmd_reports_show(argv: list[str]) -> int:
    date = _get_opt(argv, "--date")
    if not date:
        print("reports:show requires --date YYYY-MM-DD", file=sys.stderr)
        return 2
    report = ReportStore.from_env().get(date)
    if report is None:
        _print({"ok": False, "error_code": "SCAN_404_NOT_FOUND", "error": f"no report for {date}"})
        return 4
    _print(report)
    return 0


def cmd_serve(argv: list[str]) -> int:
    run_server(load_scan_config(_get_opt(argv, "--config")))
    return 0


def cmd_scheduler(argv: list[str]) -> int:
    SchedulerWorker(load_scan_config(_get_opt(argv, "--config"))).run_forever()
    return 0


COMMANDS = {
    "scan": cmd_scan,
    "config:validate": cmd_config_validate,
    "reports:list": cmd_reports_list,
    "reports:show": cmd_reports_show,
    "serve": cmd_serve,
    "scheduler": cmd_scheduler,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(USAGE, file=sys.stderr)
        return 2

    cmd = argv[0]
    tail = argv[1:]
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    configure_logging()
    try:
        return handler(tail)
    except ConfigError as e:
        _print({"ok": False, "error_code": e.err.code, "error": str(e)})
        return 10
    except Exception as e:
        _print({"ok": False, "error_code": "SCAN_999_UNEXPECTED", "error": str(e)})
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
