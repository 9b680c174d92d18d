from __future__ import annotations

import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from intel_scan.core.models import CandidateItem, ClassifiedItem
from intel_scan.core.report import SCHEMA_VERSION, assemble
from intel_scan.db.engine import make_engine, redact_database_url
from intel_scan.services.report_store import ReportStore


def _result(date: str, title: str):
    item = CandidateItem(
        title=title,
        source_name="NVD",
        source_url="https://nvd.nist.gov/vuln/CVE-2025-0001",
        published_at=datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc),
        domain="nvd.nist.gov",
        summary="Heap overflow",
    )
    ci = ClassifiedItem(item=item, category="security_alerts", severity="high", impact_tags=("Security",), score=5, order=0)
    return assemble(date, "Europe/London", {"security_alerts": [ci], "top_signals": [ci]}, [item])


class ReportStoreTests(unittest.TestCase):
    def test_save_get_and_replace(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = ReportStore(make_engine(f"sqlite:///{Path(td) / 'reports.db'}"))

            first = store.save(_result("2025-03-10", "CVE-2025-0001 in openssl"))
            again = store.save(_result("2025-03-10", "CVE-2025-0001 in openssl (updated)"))
            store.save(_result("2025-03-11", "Next day"))

            self.assertEqual(first, again)
            doc = store.get("2025-03-10")
            self.assertIsNotNone(doc)
            self.assertEqual(doc["schema_version"], SCHEMA_VERSION)
            self.assertEqual(doc["security_alerts"][0]["title"], "CVE-2025-0001 in openssl (updated)")
            self.assertEqual(doc["top_signals"][0]["impact"], ["Security"])
            self.assertEqual(doc["raw_feed"][0]["domain"], "nvd.nist.gov")
            self.assertIsNone(store.get("2025-01-01"))
            self.assertEqual(store.list_dates(), ["2025-03-11", "2025-03-10"])
            self.assertEqual(store.list_dates(limit=1), ["2025-03-11"])

    def test_from_env_creates_sqlite_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "nested" / "scan.db"
            with patch.dict(os.environ, {"DATABASE_URL": f"sqlite:///{db_path}"}):
                store = ReportStore.from_env()
                store.save(_result("2025-03-10", "x"))
            self.assertTrue(db_path.exists())

    def test_redact_database_url(self) -> None:
        self.assertEqual(
            redact_database_url("postgresql+psycopg://scan:secret@db:5432/scan"),
            "postgresql+psycopg://scan:***@db:5432/scan",
        )
        self.assertEqual(redact_database_url(""), "")


if __name__ == "__main__":
    unittest.main()
