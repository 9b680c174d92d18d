from __future__ import annotations

from dataclasses import dataclass, field

from intel_scan.utils.url_norm import DomainAllowlist


@dataclass(frozen=True)
class EmailSettings:
    to_address: str = ""
    from_address: str = ""
    subject_prefix: str = "Daily Platform Scan"


@dataclass(frozen=True)
class ScanSettings:
    timezone: str = "Europe/London"
    scan_time: str = "07:00"
    lookback_hours: int = 24
    enable_rss: bool = True
    enable_research: bool = False
    validate_urls: bool = False
    enforce_allowlist: bool = False
    dedupe_by_title: bool = False
    max_entries_per_feed: int = 50
    fetch_workers: int = 8


@dataclass(frozen=True)
class SourceSpec:
    name: str
    url: str
    type: str = "rss"
    rss_url: str = ""
    keywords: tuple[str, ...] = ()
    category: str = ""

    @property
    def feed_url(self) -> str:
        if self.type == "github_releases":
            return self.url.rstrip("/") + "/releases.atom"
        return self.rss_url or self.url


@dataclass(frozen=True)
class Topic:
    name: str
    category: str
    priority: int = 0
    sources: tuple[SourceSpec, ...] = ()


@dataclass(frozen=True)
class CategoryRule:
    category: str
    keywords: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoreSignal:
    name: str
    points: int
    keywords: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    url_patterns: tuple[str, ...] = ()
    pattern: str = ""
    max_age_hours: int | None = None


@dataclass(frozen=True)
class ClusterCap:
    name: str
    categories: tuple[str, ...]
    max_fraction: float = 0.4


@dataclass(frozen=True)
class HeadlineRules:
    max_items: int = 5
    min_score: int = 3
    max_per_domain_group: int = 2
    dominant_domains: dict[str, tuple[str, ...]] = field(default_factory=dict)
    must_represent: tuple[str, ...] = ()


@dataclass(frozen=True)
class ClassificationRules:
    severity_rules: dict[str, tuple[str, ...]] = field(default_factory=dict)
    impact_keywords: tuple[tuple[str, tuple[str, ...]], ...] = ()
    fallback_impact: str = "Platform"
    default_category: str = "trend_watchlist"
    max_items_per_category: int = 5
    max_total_items: int | None = None
    category_rules: tuple[CategoryRule, ...] = ()
    scoring_signals: tuple[ScoreSignal, ...] = ()
    clusters: tuple[ClusterCap, ...] = ()
    headline: HeadlineRules = field(default_factory=HeadlineRules)


@dataclass(frozen=True)
class ScanConfig:
    email: EmailSettings = field(default_factory=EmailSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    topics: tuple[Topic, ...] = ()
    rules: ClassificationRules = field(default_factory=ClassificationRules)
    allowlist: DomainAllowlist = field(default_factory=DomainAllowlist)

    @property
    def sources(self) -> list[SourceSpec]:
        """Sources in topic priority order (highest first), stable otherwise."""
        out: list[SourceSpec] = []
        for t in sorted(self.topics, key=lambda x: -x.priority):
            out.extend(t.sources)
        return out
