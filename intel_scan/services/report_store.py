from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Engine, select

from intel_scan.core.report import ScanResult
from intel_scan.db.base import Base
from intel_scan.db.engine import engine_from_env, make_session_factory, redact_database_url, session_scope
from intel_scan.db.models import ScanReport


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ReportStore:
    """Report archive keyed by report date; saving the same date again replaces it."""

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self.engine = engine
        self._factory = make_session_factory(engine)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_env(cls) -> "ReportStore":
        engine = engine_from_env()
        logger.info("report store database=%s", redact_database_url(str(engine.url)))
        return cls(engine)

    def save(self, result: ScanResult) -> int:
        payload = result.to_dict()
        now = _now_iso()
        with session_scope(self._factory) as s:
            row = s.execute(select(ScanReport).where(ScanReport.report_date == result.date)).scalar_one_or_none()
            if row is None:
                row = ScanReport(
                    report_date=result.date,
                    timezone=result.timezone,
                    schema_version=result.schema_version,
                    payload=payload,
                    created_at=now,
                    updated_at=now,
                )
                s.add(row)
            else:
                row.timezone = result.timezone
                row.schema_version = result.schema_version
                row.payload = payload
                row.updated_at = now
            s.flush()
            report_id = int(row.id)
        logger.info("report archived date=%s id=%d", result.date, report_id)
        return report_id

    def get(self, report_date: str) -> dict[str, Any] | None:
        with session_scope(self._factory) as s:
            row = s.execute(select(ScanReport).where(ScanReport.report_date == report_date)).scalar_one_or_none()
            return dict(row.payload) if row is not None else None

    def list_dates(self, limit: int = 100) -> list[str]:
        with session_scope(self._factory) as s:
            rows = s.execute(select(ScanReport.report_date).order_by(ScanReport.report_date.desc()).limit(limit))
            return [str(r[0]) for r in rows]
