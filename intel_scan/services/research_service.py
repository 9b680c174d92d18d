from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from intel_scan.core.models import CATEGORY_KEYS, SECTION_KEYS, CandidateItem
from intel_scan.services.research_client import (
    Citation,
    SearchResult,
    parse_citations_to_items,
    parse_day,
    recency_filter_for,
)
from intel_scan.utils.url_norm import canonicalize_url, host_of


logger = logging.getLogger(__name__)

RESEARCH_SOURCE_NAME = "Perplexity research"
CITATION_SOURCE_NAME = "Perplexity citation"


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    source_url: str = ""

    def headline(self) -> str:
        return ""

    def summary_text(self) -> str:
        return ""

    def published(self) -> str:
        return str(getattr(self, "published_at", "") or "")

    def details(self) -> dict[str, Any]:
        skip = {"source_url", "published_at"}
        return {k: v for k, v in self.model_dump().items() if k not in skip}


class TopSignalRecord(_Record):
    title: str
    why_it_matters: str = ""
    impact: list[str] = Field(default_factory=list)
    severity: Literal["high", "medium", "low"] = "low"
    published_at: str = ""
    notes_for_actions: list[str] = Field(default_factory=list)

    def headline(self) -> str:
        return self.title

    def summary_text(self) -> str:
        return self.why_it_matters


class TrendRecord(_Record):
    topic: str
    summary: str = ""
    trajectory: Literal["rising", "stable", "fading"] = "stable"
    sources: list[str] = Field(default_factory=list)

    def headline(self) -> str:
        return self.topic

    def summary_text(self) -> str:
        return self.summary


class SecurityAlertRecord(_Record):
    component: str = ""
    cve: str = ""
    cvss: str = ""
    summary: str = ""
    affected_versions: str = ""
    fix_available: bool = False

    def headline(self) -> str:
        head = ": ".join(x for x in (self.component, self.cve) if x)
        if head and self.cvss:
            head = f"{head} (CVSS {self.cvss})"
        return head or self.summary[:120]

    def summary_text(self) -> str:
        return self.summary


class AwsChangeRecord(_Record):
    service: str = ""
    change: str
    likely_effect: str = ""
    action_hint: str = ""

    def headline(self) -> str:
        return f"{self.service}: {self.change}" if self.service else self.change

    def summary_text(self) -> str:
        return self.likely_effect


class AiTrendRecord(_Record):
    item: str
    category: str = "platform"
    summary: str = ""
    impact: str = ""
    published_at: str = ""

    def headline(self) -> str:
        return self.item

    def summary_text(self) -> str:
        return self.summary


class CompetitorRecord(_Record):
    item: str
    type: Literal["press", "filing", "earnings", "media"] = "press"
    summary: str = ""
    published_at: str = ""

    def headline(self) -> str:
        return self.item

    def summary_text(self) -> str:
        return self.summary


class DevExRecord(_Record):
    pattern_or_tool: str
    update: str = ""
    relevance_to_platform: str = ""

    def headline(self) -> str:
        return f"{self.pattern_or_tool}: {self.update}" if self.update else self.pattern_or_tool

    def summary_text(self) -> str:
        return self.relevance_to_platform


class RawFeedRecord(_Record):
    title: str
    source: str = ""
    published_at: str = ""

    def headline(self) -> str:
        return self.title


SECTION_RECORDS: dict[str, type[_Record]] = {
    "top_signals": TopSignalRecord,
    "trend_watchlist": TrendRecord,
    "security_alerts": SecurityAlertRecord,
    "aws_platform_changes": AwsChangeRecord,
    "ai_trends": AiTrendRecord,
    "corporate_competitors": CompetitorRecord,
    "developer_experience": DevExRecord,
}
# Older research output used a competitor-specific key.
SECTION_ALIASES = {"corporate_hims_hers": "corporate_competitors"}


class PartialReport(BaseModel):
    date: str = ""
    timezone: str = ""
    top_signals: list[TopSignalRecord] = Field(default_factory=list)
    trend_watchlist: list[TrendRecord] = Field(default_factory=list)
    security_alerts: list[SecurityAlertRecord] = Field(default_factory=list)
    aws_platform_changes: list[AwsChangeRecord] = Field(default_factory=list)
    ai_trends: list[AiTrendRecord] = Field(default_factory=list)
    corporate_competitors: list[CompetitorRecord] = Field(default_factory=list)
    developer_experience: list[DevExRecord] = Field(default_factory=list)
    raw_feed: list[RawFeedRecord] = Field(default_factory=list)

    @classmethod
    def empty(cls, date: str = "", timezone: str = "") -> "PartialReport":
        return cls(date=date, timezone=timezone)

    @classmethod
    def from_payload(cls, doc: dict[str, Any]) -> "PartialReport":
        """Validate a research payload section by section; bad records are dropped."""
        fields: dict[str, Any] = {
            "date": str(doc.get("date", "") or ""),
            "timezone": str(doc.get("timezone", "") or ""),
        }
        dropped = 0
        sections = dict(SECTION_RECORDS, raw_feed=RawFeedRecord)
        for key, record_cls in sections.items():
            raw = doc.get(key)
            if raw is None:
                raw = next((doc[a] for a, target in SECTION_ALIASES.items() if target == key and a in doc), None)
            if not isinstance(raw, list):
                continue
            records = []
            for idx, row in enumerate(raw):
                if not isinstance(row, dict):
                    dropped += 1
                    continue
                try:
                    records.append(record_cls.model_validate(row))
                except ValidationError as e:
                    dropped += 1
                    logger.debug("research record dropped section=%s index=%d errors=%d", key, idx, e.error_count())
            fields[key] = records
        if dropped:
            logger.info("research records dropped count=%d", dropped)
        return cls(**fields)

    def counts(self) -> dict[str, int]:
        return {k: len(getattr(self, k)) for k in (*SECTION_KEYS, "raw_feed")}


@dataclass(frozen=True)
class ResearchResult:
    report: PartialReport
    query: str
    ok: bool = True
    citations: tuple[Citation, ...] = ()


class StructuredSearch(Protocol):
    def search_structured(self, query: str, *, recency_filter: str = "day") -> SearchResult: ...


def build_query(date: str, timezone_name: str, lookback_hours: int) -> str:
    sections = ", ".join(SECTION_KEYS)
    return "\n".join(
        [
            "Produce a daily platform and architecture intelligence brief.",
            f"Current date: {date}",
            f"Timezone: {timezone_name}",
            f"Only include items published in the last {lookback_hours} hours.",
            f"Return one JSON object with keys: date, timezone, {sections}, raw_feed.",
            "Every section is a list (empty lists allowed) of at most 5 records, each with a real source_url.",
            "Return only the JSON object.",
        ]
    )


class ResearchService:
    def __init__(self, client: StructuredSearch) -> None:
        self.client = client

    def perform_research(self, date: str, timezone_name: str, lookback_hours: int) -> ResearchResult:
        query = build_query(date, timezone_name, lookback_hours)
        logger.info("research started query_length=%d lookback_hours=%d", len(query), lookback_hours)
        try:
            res = self.client.search_structured(query, recency_filter=recency_filter_for(lookback_hours))
            report = PartialReport.from_payload(res.data)
        except Exception as e:
            # Research is best effort: any failure yields an empty report.
            logger.error("research failed error=%s: %s", type(e).__name__, e)
            return ResearchResult(report=PartialReport.empty(date, timezone_name), query=query, ok=False)
        logger.info("research completed counts=%s citations=%d", report.counts(), len(res.citations))
        return ResearchResult(report=report, query=query, citations=tuple(res.citations))


def _to_candidate(record: _Record, section: str, now: datetime) -> CandidateItem | None:
    title = record.headline().strip()
    if not title or not record.source_url.strip():
        return None
    url = canonicalize_url(record.source_url)
    source = getattr(record, "source", "") or RESEARCH_SOURCE_NAME
    hint = section if section in CATEGORY_KEYS else ""
    details = record.details() if section != "raw_feed" else {}
    return CandidateItem(
        title=title,
        source_name=source,
        source_url=url,
        published_at=parse_day(record.published(), now),
        domain=host_of(url),
        summary=record.summary_text(),
        category_hint=hint,
        details=details,
    )


def research_items(
    report: PartialReport,
    *,
    citations: Sequence[Citation] = (),
    now: datetime | None = None,
) -> list[CandidateItem]:
    """Flatten a research report into candidates; the originating section becomes the category hint.

    Cited sources that no record already points at follow the records, untyped.
    """
    now = now or datetime.now(timezone.utc)
    out: list[CandidateItem] = []
    skipped = 0
    for key in (*SECTION_KEYS, "raw_feed"):
        for record in getattr(report, key):
            cand = _to_candidate(record, key, now)
            if cand is None:
                skipped += 1
                continue
            out.append(cand)
    if skipped:
        logger.debug("research records without title or url skipped=%d", skipped)
    seen = {c.source_url for c in out}
    extra = [c for c in parse_citations_to_items(citations, CITATION_SOURCE_NAME, now=now) if c.source_url not in seen]
    if extra:
        logger.debug("research citations added=%d", len(extra))
    return out + extra
