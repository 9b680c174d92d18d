from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from intel_scan.core.diversity import balance, selection_stats
from intel_scan.core.models import CATEGORY_KEYS, CandidateItem, ClassifiedItem, ValidatedItem
from intel_scan.core.scoring import impact_tags_of, item_text, score_item, severity_of
from intel_scan.rules.models import ClassificationRules
from intel_scan.utils.url_norm import domain_matches


logger = logging.getLogger(__name__)


def assign_category(item: CandidateItem, rules: ClassificationRules) -> str:
    """First matching rule wins; then the producer's hint; then the default bucket."""
    text = item_text(item)
    for rule in rules.category_rules:
        if any(kw in text for kw in rule.keywords) or domain_matches(item.domain, rule.domains):
            return rule.category
    if item.category_hint in CATEGORY_KEYS:
        return item.category_hint
    return rules.default_category


def classify_item(
    item: CandidateItem,
    rules: ClassificationRules,
    now: datetime,
    order: int,
    validation: ValidatedItem | None = None,
) -> ClassifiedItem:
    text = item_text(item)
    score, fired = score_item(item, rules, now)
    ci = ClassifiedItem(
        item=item,
        category=assign_category(item, rules),
        severity=severity_of(text, rules),
        impact_tags=impact_tags_of(text, rules),
        score=score,
        order=order,
        validation=validation,
    )
    logger.debug(
        "classified title=%r category=%s severity=%s score=%d signals=%s",
        item.title,
        ci.category,
        ci.severity,
        score,
        ",".join(fired) or "-",
    )
    return ci


def _is_malformed(item: CandidateItem) -> bool:
    return not str(item.title or "").strip() or not str(item.source_url or "").strip()


def classify(
    items: Sequence[CandidateItem | ValidatedItem],
    rules: ClassificationRules,
    now: datetime,
) -> dict[str, list[ClassifiedItem]]:
    """Assign, score and balance items into report sections.

    Deterministic for a given ``(items, rules, now)``; discovery order is the
    final tie-break everywhere.
    """
    classified: list[ClassifiedItem] = []
    malformed = 0
    invalid = 0
    for idx, raw in enumerate(items):
        validation = raw if isinstance(raw, ValidatedItem) else None
        item = raw.item if isinstance(raw, ValidatedItem) else raw
        if validation is not None and not validation.is_valid:
            invalid += 1
            continue
        if _is_malformed(item):
            malformed += 1
            continue
        classified.append(classify_item(item, rules, now, idx, validation))

    if malformed or invalid:
        logger.debug("classification skipped malformed=%d invalid=%d", malformed, invalid)

    sections = balance(classified, rules)
    stats = selection_stats(sections, rules)
    logger.info(
        "classification done input=%d selected=%d clusters=%s",
        len(items),
        stats["total_selected"],
        stats["clusters"],
    )
    return sections
