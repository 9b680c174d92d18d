from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from intel_scan.core.models import SEVERITY_RANK, CandidateItem, ClassifiedItem
from intel_scan.rules.models import ClassificationRules, ScoreSignal
from intel_scan.utils.url_norm import domain_matches


def _norm_text(s: str) -> str:
    t = str(s or "").lower()
    t = re.sub(r"\s+", " ", t)
    return t.strip()


def item_text(item: CandidateItem) -> str:
    return _norm_text(f"{item.title} {item.summary}")


def _match_any(text: str, keywords: tuple[str, ...]) -> bool:
    for kw in keywords or ():
        k = _norm_text(kw)
        if k and k in text:
            return True
    return False


def severity_of(text: str, rules: ClassificationRules) -> str:
    for level in ("high", "medium", "low"):
        if _match_any(text, rules.severity_rules.get(level, ())):
            return level
    return "low"


def impact_tags_of(text: str, rules: ClassificationRules) -> tuple[str, ...]:
    tags = tuple(tag for tag, kws in rules.impact_keywords if _match_any(text, kws))
    return tags or (rules.fallback_impact,)


def _age(published_at: datetime | None, now: datetime) -> timedelta | None:
    if published_at is None:
        return None
    pa = published_at if published_at.tzinfo else published_at.replace(tzinfo=timezone.utc)
    ref = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return ref - pa


def signal_fires(signal: ScoreSignal, item: CandidateItem, text: str, now: datetime) -> bool:
    """A signal fires when every condition it declares holds; one without conditions never fires."""
    checks: list[bool] = []
    if signal.keywords:
        checks.append(_match_any(text, signal.keywords))
    if signal.domains:
        checks.append(domain_matches(item.domain, signal.domains))
    if signal.url_patterns:
        checks.append(any(re.search(p, item.source_url, flags=re.I) for p in signal.url_patterns))
    if signal.pattern:
        checks.append(re.search(signal.pattern, text, flags=re.I) is not None)
    if signal.max_age_hours is not None:
        age = _age(item.published_at, now)
        checks.append(age is not None and age <= timedelta(hours=signal.max_age_hours))
    return bool(checks) and all(checks)


def score_item(item: CandidateItem, rules: ClassificationRules, now: datetime) -> tuple[int, list[str]]:
    text = item_text(item)
    score = 0
    fired: list[str] = []
    for sig in rules.scoring_signals:
        if signal_fires(sig, item, text, now):
            score += sig.points
            fired.append(sig.name)
    return score, fired


def _epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def rank_key(ci: ClassifiedItem) -> tuple[int, int, float, int]:
    """Severity first, then score, then recency (newest first), then discovery order.

    Undated items sort after dated ones at the same severity and score.
    """
    pa = ci.published_at
    recency = -_epoch(pa) if pa is not None else float("inf")
    return (SEVERITY_RANK.get(ci.severity, len(SEVERITY_RANK)), -ci.score, recency, ci.order)


def demotion_key(ci: ClassifiedItem) -> tuple[int, int]:
    """Lowest score goes first; equal scores demote the later discovery first."""
    return (ci.score, -ci.order)
