from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Sequence

from intel_scan.core.models import SECTION_KEYS, CandidateItem, ValidatedItem
from intel_scan.rules.models import CategoryRule, ClassificationRules, ScanConfig, ScanSettings, SourceSpec, Topic
from intel_scan.services.research_client import Citation, ResearchError, SearchResult
from intel_scan.services.research_service import CITATION_SOURCE_NAME, ResearchService
from intel_scan.services.scan_service import ScanService
from intel_scan.utils.url_norm import DomainAllowlist


NOW = datetime(2025, 3, 10, 23, 30, tzinfo=timezone.utc)


def _item(title: str, url: str, *, published_at: datetime | None = NOW - timedelta(hours=1), hint: str = "") -> CandidateItem:
    host = url.split("/")[2]
    return CandidateItem(
        title=title,
        source_name="feed",
        source_url=url,
        published_at=published_at,
        domain=host,
        category_hint=hint,
    )


FEEDS: dict[str, list[CandidateItem]] = {
    "aws": [
        _item("Lambda supports Node 22", "https://aws.amazon.com/new/lambda-node22", hint="aws_platform_changes"),
        _item("EKS 1.32 available", "https://aws.amazon.com/new/eks-132", hint="aws_platform_changes"),
    ],
    "security": [
        _item("CVE-2025-0001 in openssl", "https://nvd.nist.gov/vuln/CVE-2025-0001", hint="security_alerts"),
        _item("Lambda supports Node 22 (mirror)", "https://aws.amazon.com/new/lambda-node22/", published_at=NOW - timedelta(hours=5)),
    ],
    "blog": [
        _item("Undated platform engineering essay", "https://thenewstack.io/essay", published_at=None, hint="developer_experience"),
    ],
}


def _source(name: str, category: str) -> SourceSpec:
    return SourceSpec(name=name, url=f"https://{name}.example.com/feed", category=category)


def _config(**scan) -> ScanConfig:
    topics = (
        Topic(name="AWS", category="aws_platform_changes", priority=3, sources=(_source("aws", "aws_platform_changes"),)),
        Topic(name="Security", category="security_alerts", priority=2, sources=(_source("security", "security_alerts"),)),
        Topic(name="DevEx", category="developer_experience", priority=1, sources=(_source("blog", "developer_experience"),)),
    )
    rules = ClassificationRules(category_rules=(CategoryRule("security_alerts", keywords=("cve-",)),))
    return ScanConfig(
        scan=ScanSettings(timezone="Asia/Tokyo", **scan),
        topics=topics,
        rules=rules,
        allowlist=DomainAllowlist(enabled=False),
    )


def fake_fetcher(source: SourceSpec, lookback_hours: int, *, now: datetime | None = None, max_entries: int = 50) -> list[CandidateItem]:
    if source.name == "broken":
        raise ConnectionError("network down")
    return list(FEEDS.get(source.name, []))


class FakeClient:
    def __init__(
        self,
        payload: dict | None = None,
        error: Exception | None = None,
        citations: list[Citation] | None = None,
    ) -> None:
        self.payload = payload
        self.error = error
        self.citations = citations or []

    def search_structured(self, query: str, *, recency_filter: str = "day") -> SearchResult:
        if self.error is not None:
            raise self.error
        return SearchResult(data=dict(self.payload or {}), citations=list(self.citations))


def _all_titles(result) -> set[str]:
    return {e["title"] for k in SECTION_KEYS for e in result.sections[k]}


class ScanServiceTests(unittest.TestCase):
    def test_full_scan_merges_classifies_and_assembles(self) -> None:
        svc = ScanService(_config(), fetcher=fake_fetcher, clock=lambda: NOW)
        result = svc.perform_scan()

        # 23:30 UTC is already the next day in Tokyo.
        self.assertEqual(result.date, "2025-03-11")
        self.assertEqual(result.timezone, "Asia/Tokyo")
        self.assertEqual(set(result.sections), set(SECTION_KEYS))
        self.assertEqual(len(result.raw_feed), 4)
        kept = [it for it in result.raw_feed if "lambda-node22" in it.source_url]
        self.assertEqual([it.title for it in kept], ["Lambda supports Node 22 (mirror)"])
        self.assertEqual([e["title"] for e in result.sections["security_alerts"]], ["CVE-2025-0001 in openssl"])
        self.assertEqual([e["title"] for e in result.sections["aws_platform_changes"]], ["EKS 1.32 available"])
        # The surviving duplicate carries its own source's hint.
        self.assertEqual([e["title"] for e in result.sections["trend_watchlist"]], ["Lambda supports Node 22 (mirror)"])

    def test_undated_item_reaches_the_report(self) -> None:
        result = ScanService(_config(), fetcher=fake_fetcher, clock=lambda: NOW).perform_scan()
        dev = result.sections["developer_experience"]
        self.assertEqual([e["title"] for e in dev], ["Undated platform engineering essay"])
        self.assertIsNone(dev[0]["published_at"])

    def test_failing_source_does_not_abort_scan(self) -> None:
        cfg = _config()
        broken = Topic(name="Broken", category="trend_watchlist", priority=9, sources=(_source("broken", "trend_watchlist"),))
        cfg = replace(cfg, topics=cfg.topics + (broken,))
        with self.assertLogs("intel_scan.services.scan_service", level="WARNING"):
            result = ScanService(cfg, fetcher=fake_fetcher, clock=lambda: NOW).perform_scan()
        self.assertEqual(len(result.raw_feed), 4)
        self.assertEqual(set(result.sections), set(SECTION_KEYS))

    def test_no_collectors_gives_empty_complete_report(self) -> None:
        result = ScanService(_config(enable_rss=False), fetcher=fake_fetcher, clock=lambda: NOW).perform_scan()
        self.assertEqual(result.counts, {k: 0 for k in SECTION_KEYS})
        self.assertEqual(result.raw_feed, ())

    def test_allowlist_drops_unlisted_hosts(self) -> None:
        cfg = replace(_config(), allowlist=DomainAllowlist(domains=frozenset({"aws.amazon.com"}), enabled=True))
        result = ScanService(cfg, fetcher=fake_fetcher, clock=lambda: NOW).perform_scan()
        self.assertTrue(all(it.domain == "aws.amazon.com" for it in result.raw_feed))
        self.assertEqual(len(result.raw_feed), 2)

    def test_validation_filters_raw_feed(self) -> None:
        seen: list[int] = []

        def validator(items: Sequence[CandidateItem]) -> list[ValidatedItem]:
            seen.append(len(items))
            return [
                ValidatedItem(item=it, http_status=200, checked_at=NOW, is_valid=True)
                for it in items
                if "nvd.nist.gov" not in it.source_url
            ]

        svc = ScanService(_config(validate_urls=True), fetcher=fake_fetcher, validator=validator, clock=lambda: NOW)
        result = svc.perform_scan()

        self.assertEqual(seen, [4])
        self.assertEqual(len(result.raw_feed), 3)
        self.assertEqual(result.sections["security_alerts"], [])
        self.assertTrue(all(e.get("http_status") == 200 for k in SECTION_KEYS for e in result.sections[k]))

    def test_research_items_join_the_pool(self) -> None:
        payload = {
            "ai_trends": [
                {"item": "Clinical LLM guidance", "summary": "New guidance.", "source_url": "https://ema.europa.eu/llm"}
            ]
        }
        svc = ScanService(
            _config(enable_research=True),
            fetcher=fake_fetcher,
            research=ResearchService(FakeClient(payload=payload)),
            clock=lambda: NOW,
        )
        result = svc.perform_scan()
        self.assertEqual([e["title"] for e in result.sections["ai_trends"]], ["Clinical LLM guidance"])
        self.assertEqual(result.sections["ai_trends"][0]["summary"], "New guidance.")
        self.assertEqual(len(result.raw_feed), 5)

    def test_research_citations_reach_raw_feed(self) -> None:
        citations = [
            Citation(title="Platform engineering survey", url="https://cncf.io/reports/survey-2025/?utm_source=pplx"),
            # Already fetched from a feed; merged, not duplicated.
            Citation(title="EKS 1.32", url="https://aws.amazon.com/new/eks-132"),
        ]
        svc = ScanService(
            _config(enable_research=True),
            fetcher=fake_fetcher,
            research=ResearchService(FakeClient(payload={}, citations=citations)),
            clock=lambda: NOW,
        )
        result = svc.perform_scan()

        cited = [it for it in result.raw_feed if it.source_name == CITATION_SOURCE_NAME]
        self.assertEqual([it.source_url for it in cited], ["https://cncf.io/reports/survey-2025"])
        self.assertEqual(len(result.raw_feed), 5)
        self.assertIn("Platform engineering survey", _all_titles(result))

    def test_research_service_unused_when_research_disabled(self) -> None:
        calls: list[str] = []

        class RecordingClient(FakeClient):
            def search_structured(self, query: str, *, recency_filter: str = "day") -> SearchResult:
                calls.append(query)
                return super().search_structured(query, recency_filter=recency_filter)

        svc = ScanService(_config(), fetcher=fake_fetcher, research=ResearchService(RecordingClient()), clock=lambda: NOW)
        self.assertEqual(len(svc.perform_scan().raw_feed), 4)
        self.assertEqual(calls, [])

    def test_research_enabled_without_service_warns(self) -> None:
        svc = ScanService(_config(enable_research=True), fetcher=fake_fetcher, clock=lambda: NOW)
        with self.assertLogs("intel_scan.services.scan_service", level="WARNING") as logs:
            result = svc.perform_scan()
        self.assertIn("no research service configured", "\n".join(logs.output))
        self.assertEqual(len(result.raw_feed), 4)

    def test_research_failure_keeps_feed_items(self) -> None:
        svc = ScanService(
            _config(enable_research=True),
            fetcher=fake_fetcher,
            research=ResearchService(FakeClient(error=ResearchError("rate limited"))),
            clock=lambda: NOW,
        )
        result = svc.perform_scan()
        self.assertEqual(len(result.raw_feed), 4)
        self.assertIn("CVE-2025-0001 in openssl", _all_titles(result))

    def test_to_dict_shape(self) -> None:
        doc = ScanService(_config(), fetcher=fake_fetcher, clock=lambda: NOW).perform_scan().to_dict()
        self.assertEqual(list(doc)[:3], ["schema_version", "date", "timezone"])
        self.assertEqual(list(doc), ["schema_version", "date", "timezone", *SECTION_KEYS, "raw_feed"])
        for key in (*SECTION_KEYS, "raw_feed"):
            self.assertIsInstance(doc[key], list)
        self.assertEqual(doc["raw_feed"][0]["source"], "feed")


if __name__ == "__main__":
    unittest.main()
