from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final


HEADLINE_SECTION: Final = "top_signals"
DEFAULT_CATEGORY: Final = "trend_watchlist"

SECTION_KEYS: Final[tuple[str, ...]] = (
    "top_signals",
    "trend_watchlist",
    "security_alerts",
    "aws_platform_changes",
    "ai_trends",
    "corporate_competitors",
    "developer_experience",
)
# Sections an item can be assigned to; the headline is filled by promotion only.
CATEGORY_KEYS: Final[tuple[str, ...]] = tuple(k for k in SECTION_KEYS if k != HEADLINE_SECTION)

SEVERITY_LEVELS: Final[tuple[str, ...]] = ("high", "medium", "low")
SEVERITY_RANK: Final[dict[str, int]] = {s: i for i, s in enumerate(SEVERITY_LEVELS)}


@dataclass(frozen=True)
class CandidateItem:
    title: str
    source_name: str
    source_url: str
    published_at: datetime | None
    domain: str
    summary: str = ""
    category_hint: str = ""
    details: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "source": self.source_name,
            "source_url": self.source_url,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "domain": self.domain,
        }


@dataclass(frozen=True)
class ValidatedItem:
    item: CandidateItem
    http_status: int
    checked_at: datetime
    is_valid: bool


@dataclass(frozen=True)
class ClassifiedItem:
    item: CandidateItem
    category: str
    severity: str
    impact_tags: tuple[str, ...]
    score: int
    order: int
    validation: ValidatedItem | None = None

    @property
    def title(self) -> str:
        return self.item.title

    @property
    def domain(self) -> str:
        return self.item.domain

    @property
    def published_at(self) -> datetime | None:
        return self.item.published_at
