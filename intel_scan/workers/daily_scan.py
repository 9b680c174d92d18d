from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol

from intel_scan.core.report import ScanResult
from intel_scan.rules.loader import with_lookback
from intel_scan.rules.models import ScanConfig
from intel_scan.services.email_sender import build_subject, render_text
from intel_scan.services.scan_service import ScanService


logger = logging.getLogger(__name__)


class Scanner(Protocol):
    def perform_scan(self) -> ScanResult: ...


class EmailSender(Protocol):
    def send(self, *, subject: str, body: str, to_address: str, from_address: str = "") -> None: ...


class ReportSink(Protocol):
    def save(self, result: ScanResult) -> int: ...


def lookback_from_event(event: Mapping[str, Any] | None) -> int | None:
    """``lookback_hours`` from the event root, else from ``event["detail"]``."""
    if not isinstance(event, Mapping):
        return None
    for src in (event, event.get("detail")):
        if not isinstance(src, Mapping):
            continue
        raw = src.get("lookback_hours")
        if raw is None or raw == "":
            continue
        try:
            hours = int(raw)
        except (TypeError, ValueError):
            logger.warning("ignoring invalid lookback_hours value=%r", raw)
            continue
        if hours > 0:
            return hours
        logger.warning("ignoring non-positive lookback_hours value=%r", raw)
    return None


def handle_event(
    event: Mapping[str, Any] | None,
    config: ScanConfig,
    *,
    service_factory: Callable[[ScanConfig], Scanner] = ScanService.from_config,
    email_sender: EmailSender | None = None,
    report_store: ReportSink | None = None,
    send: bool = True,
) -> dict[str, Any]:
    """Run one daily scan and push the report to the configured sinks.

    Sink failures are logged and listed under ``errors`` in the summary; they
    never discard the scan itself.
    """
    override = lookback_from_event(event)
    cfg = with_lookback(config, override) if override is not None else config
    if override is not None:
        logger.info("lookback override lookback_hours=%d", override)

    result = service_factory(cfg).perform_scan()
    summary: dict[str, Any] = {
        "ok": True,
        "date": result.date,
        "timezone": result.timezone,
        "lookback_hours": cfg.scan.lookback_hours,
        "counts": result.counts,
        "raw_feed": len(result.raw_feed),
        "email_sent": False,
        "report_id": None,
        "errors": [],
    }

    if send and email_sender is not None:
        if not cfg.email.to_address or cfg.email.to_address.startswith("${"):
            logger.warning("email not sent, no recipient configured")
        else:
            try:
                email_sender.send(
                    subject=build_subject(cfg.email.subject_prefix, result.date),
                    body=render_text(result),
                    to_address=cfg.email.to_address,
                    from_address=cfg.email.from_address,
                )
                summary["email_sent"] = True
            except Exception as e:
                logger.error("email send failed error=%s: %s", type(e).__name__, e)
                summary["errors"].append(f"email: {type(e).__name__}: {e}")

    if report_store is not None:
        try:
            summary["report_id"] = report_store.save(result)
        except Exception as e:
            logger.error("report archive failed error=%s: %s", type(e).__name__, e)
            summary["errors"].append(f"archive: {type(e).__name__}: {e}")

    summary["ok"] = not summary["errors"]
    return summary
