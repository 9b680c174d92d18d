from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence
from zoneinfo import ZoneInfo

from intel_scan.core.classify import classify
from intel_scan.core.dedupe import merge_candidates
from intel_scan.core.models import CandidateItem, ValidatedItem
from intel_scan.core.report import ScanResult, assemble
from intel_scan.rules.models import ScanConfig, SourceSpec
from intel_scan.services.research_client import PerplexityClient, ResearchError
from intel_scan.services.research_service import ResearchService, research_items
from intel_scan.services.source_fetcher import fetch_source
from intel_scan.services.url_probe import validate_items


logger = logging.getLogger(__name__)


class SourceFetcher(Protocol):
    def __call__(
        self,
        source: SourceSpec,
        lookback_hours: int,
        *,
        now: datetime | None = None,
        max_entries: int = ...,
    ) -> list[CandidateItem]: ...


Validator = Callable[[Sequence[CandidateItem]], list[ValidatedItem]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanService:
    def __init__(
        self,
        config: ScanConfig,
        *,
        fetcher: SourceFetcher = fetch_source,
        research: ResearchService | None = None,
        validator: Validator = validate_items,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.fetcher = fetcher
        self.research = research
        self.validator = validator
        self.clock = clock

    @classmethod
    def from_config(cls, config: ScanConfig) -> "ScanService":
        research = None
        if config.scan.enable_research:
            try:
                research = ResearchService(PerplexityClient.from_env())
            except ResearchError as e:
                logger.error("research disabled error=%s", e)
        return cls(config, research=research)

    def _fetch(self, source: SourceSpec, now: datetime) -> list[CandidateItem]:
        return self.fetcher(
            source,
            self.config.scan.lookback_hours,
            now=now,
            max_entries=self.config.scan.max_entries_per_feed,
        )

    def _research(self, research: ResearchService, date: str, now: datetime) -> list[CandidateItem]:
        res = research.perform_research(date, self.config.scan.timezone, self.config.scan.lookback_hours)
        return research_items(res.report, citations=res.citations, now=now)

    @staticmethod
    def _settle(fut: Future[list[CandidateItem]], label: str) -> list[CandidateItem]:
        try:
            return fut.result()
        except Exception as e:
            logger.warning("collector failed collector=%s error=%s: %s", label, type(e).__name__, e)
            return []

    def collect(self, date: str, now: datetime) -> list[list[CandidateItem]]:
        """Run every collector concurrently and wait for all of them to settle."""
        scan = self.config.scan
        sources = self.config.sources if scan.enable_rss else []
        research = self.research if scan.enable_research else None
        if scan.enable_research and research is None:
            logger.warning("research enabled but no research service configured")
        jobs = len(sources) + (1 if research is not None else 0)
        if jobs == 0:
            logger.warning("no collectors enabled, scan will be empty")
            return []

        with ThreadPoolExecutor(max_workers=max(1, min(scan.fetch_workers, jobs))) as ex:
            futures = [(src.name, ex.submit(self._fetch, src, now)) for src in sources]
            if research is not None:
                futures.append(("research", ex.submit(self._research, research, date, now)))
            return [self._settle(fut, label) for label, fut in futures]

    def _apply_allowlist(self, item_sets: list[list[CandidateItem]]) -> list[list[CandidateItem]]:
        allowlist = self.config.allowlist
        if not allowlist.enabled:
            return item_sets
        out = [[it for it in items if allowlist.allows(it.source_url)] for items in item_sets]
        dropped = sum(len(a) for a in item_sets) - sum(len(b) for b in out)
        if dropped:
            logger.info("allowlist filtered items=%d", dropped)
        return out

    def perform_scan(self) -> ScanResult:
        cfg = self.config
        now = self.clock()
        tz = cfg.scan.timezone
        date = now.astimezone(ZoneInfo(tz)).strftime("%Y-%m-%d")
        logger.info("scan started date=%s timezone=%s lookback_hours=%d", date, tz, cfg.scan.lookback_hours)

        item_sets = self._apply_allowlist(self.collect(date, now))
        merged = merge_candidates(item_sets, dedupe_by_title=cfg.scan.dedupe_by_title)

        to_classify: Sequence[CandidateItem | ValidatedItem] = merged
        raw_feed: list[CandidateItem] = merged
        if cfg.scan.validate_urls and merged:
            validated = self.validator(merged)
            to_classify = validated
            raw_feed = [v.item for v in validated]

        sections = classify(to_classify, cfg.rules, now)
        result = assemble(date, tz, sections, raw_feed)
        logger.info("scan finished date=%s raw_feed=%d counts=%s", date, len(raw_feed), result.counts)
        return result
