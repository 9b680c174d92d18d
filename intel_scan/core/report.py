from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from intel_scan.core.models import SECTION_KEYS, CandidateItem, ClassifiedItem


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class ScanResult:
    date: str
    timezone: str
    sections: dict[str, list[dict[str, Any]]]
    raw_feed: tuple[CandidateItem, ...] = ()
    schema_version: str = SCHEMA_VERSION

    @property
    def counts(self) -> dict[str, int]:
        return {k: len(self.sections.get(k, [])) for k in SECTION_KEYS}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "schema_version": self.schema_version,
            "date": self.date,
            "timezone": self.timezone,
        }
        for k in SECTION_KEYS:
            out[k] = [dict(e) for e in self.sections.get(k, [])]
        out["raw_feed"] = [it.to_dict() for it in self.raw_feed]
        return out


def render_entry(ci: ClassifiedItem) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "title": ci.item.title,
        "source": ci.item.source_name,
        "source_url": ci.item.source_url,
        "published_at": ci.item.published_at.isoformat() if ci.item.published_at else None,
        "domain": ci.item.domain,
        "category": ci.category,
        "severity": ci.severity,
        "impact": list(ci.impact_tags),
        "score": ci.score,
    }
    if ci.item.summary:
        entry["summary"] = ci.item.summary
    for k, v in ci.item.details.items():
        entry.setdefault(k, v)
    if ci.validation is not None:
        entry["http_status"] = ci.validation.http_status
    return entry


def assemble(
    date: str,
    timezone: str,
    sections: Mapping[str, Iterable[ClassifiedItem]],
    raw_feed: Iterable[CandidateItem],
) -> ScanResult:
    unknown = sorted(set(sections) - set(SECTION_KEYS))
    if unknown:
        logger.warning("ignoring unknown report sections keys=%s", ",".join(unknown))
    rendered = {k: [render_entry(ci) for ci in sections.get(k, [])] for k in SECTION_KEYS}
    return ScanResult(
        date=date,
        timezone=timezone,
        sections=rendered,
        raw_feed=tuple(raw_feed),
    )
