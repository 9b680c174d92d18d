from __future__ import annotations

import logging
from typing import Any

from intel_scan.core.models import CATEGORY_KEYS, HEADLINE_SECTION, SECTION_KEYS, ClassifiedItem
from intel_scan.core.scoring import demotion_key, rank_key
from intel_scan.rules.models import ClassificationRules, ClusterCap, HeadlineRules
from intel_scan.utils.url_norm import domain_matches


logger = logging.getLogger(__name__)

# Float slack for fraction comparisons such as 4/10 <= 0.4.
_EPS = 1e-9


def cap_per_category(items: list[ClassifiedItem], max_items: int) -> dict[str, list[ClassifiedItem]]:
    sections: dict[str, list[ClassifiedItem]] = {k: [] for k in CATEGORY_KEYS}
    for ci in sorted(items, key=rank_key):
        bucket = sections.setdefault(ci.category, [])
        if len(bucket) < max_items:
            bucket.append(ci)
    return sections


def apply_total_budget(sections: dict[str, list[ClassifiedItem]], max_total: int | None) -> dict[str, list[ClassifiedItem]]:
    if max_total is None:
        return sections
    selected = sorted((ci for items in sections.values() for ci in items), key=rank_key)
    keep = {ci.order for ci in selected[:max_total]}
    dropped = len(selected) - len(keep)
    if dropped > 0:
        logger.info("global budget trimmed items=%d max_total_items=%d", dropped, max_total)
    return {k: [ci for ci in items if ci.order in keep] for k, items in sections.items()}


def _selected_count(sections: dict[str, list[ClassifiedItem]]) -> int:
    return sum(len(items) for items in sections.values())


def _cluster_count(sections: dict[str, list[ClassifiedItem]], cluster: ClusterCap) -> int:
    return sum(len(sections.get(c, [])) for c in cluster.categories)


def _over_cap(in_cluster: int, total: int, fraction: float) -> bool:
    return total > 0 and in_cluster > fraction * total + _EPS


def _fits_clusters(
    ci: ClassifiedItem,
    sections: dict[str, list[ClassifiedItem]],
    clusters: tuple[ClusterCap, ...],
    *,
    extra: int = 1,
) -> bool:
    # Adding an item only raises the fraction of clusters that contain its category.
    total = _selected_count(sections) + extra
    for cl in clusters:
        if ci.category not in cl.categories:
            continue
        if _over_cap(_cluster_count(sections, cl) + extra, total, cl.max_fraction):
            return False
    return True


def enforce_cluster_caps(
    sections: dict[str, list[ClassifiedItem]],
    pool: list[ClassifiedItem],
    rules: ClassificationRules,
) -> dict[str, list[ClassifiedItem]]:
    """Demote cluster items until every cluster is within its fraction of the selection.

    The lowest-ranked cluster member is demoted first (see ``demotion_key``); each
    freed slot is backfilled with the best unselected item from a category outside
    the offending cluster that still has room. Demoted items never come back, so
    the loop ends even when the whole cluster has to go.
    """
    out = {k: list(v) for k, v in sections.items()}
    if not rules.clusters:
        return out

    selected = {ci.order for items in out.values() for ci in items}
    demoted: set[int] = set()
    ranked_pool = sorted(pool, key=rank_key)

    changed = True
    while changed:
        changed = False
        for cl in rules.clusters:
            while _over_cap(_cluster_count(out, cl), _selected_count(out), cl.max_fraction):
                members = [ci for c in cl.categories for ci in out.get(c, [])]
                victim = min(members, key=demotion_key)
                out[victim.category] = [ci for ci in out[victim.category] if ci.order != victim.order]
                selected.discard(victim.order)
                demoted.add(victim.order)
                changed = True
                logger.debug(
                    "cluster demotion cluster=%s category=%s score=%d title=%r",
                    cl.name,
                    victim.category,
                    victim.score,
                    victim.title,
                )
                filler = _backfill_candidate(out, ranked_pool, selected | demoted, cl, rules)
                if filler is not None:
                    out[filler.category] = sorted(out.get(filler.category, []) + [filler], key=rank_key)
                    selected.add(filler.order)
    return out


def _backfill_candidate(
    sections: dict[str, list[ClassifiedItem]],
    ranked_pool: list[ClassifiedItem],
    excluded: set[int],
    cluster: ClusterCap,
    rules: ClassificationRules,
) -> ClassifiedItem | None:
    if rules.max_total_items is not None and _selected_count(sections) >= rules.max_total_items:
        return None
    for ci in ranked_pool:
        if ci.order in excluded or ci.category in cluster.categories:
            continue
        if len(sections.get(ci.category, [])) >= rules.max_items_per_category:
            continue
        if not _fits_clusters(ci, sections, rules.clusters):
            continue
        return ci
    return None


def headline_limit(rules: ClassificationRules) -> int:
    """The headline is a report section too, so it obeys the per-section cap."""
    return max(0, min(rules.headline.max_items, rules.max_items_per_category))


def domain_group(domain: str, headline: HeadlineRules) -> str | None:
    for group, domains in headline.dominant_domains.items():
        if domain_matches(domain, domains):
            return group
    return None


def _qualifies(ci: ClassifiedItem, headline: HeadlineRules) -> bool:
    return ci.score >= headline.min_score or ci.severity == "high"


def select_headline(
    sections: dict[str, list[ClassifiedItem]],
    pool: list[ClassifiedItem],
    rules: ClassificationRules,
) -> list[ClassifiedItem]:
    """Promote the strongest selected items into the headline section.

    Each dominant domain group is capped first. When no promoted item comes from a
    must-represent category, the best qualifying item from those categories in the
    whole classified pool takes a free slot or replaces the lowest-ranked headline
    item, provided the domain and cluster caps still hold. Unfillable slots stay
    empty.
    """
    hl = rules.headline
    limit = headline_limit(rules)
    selected = [ci for k in CATEGORY_KEYS for ci in sections.get(k, [])]
    candidates = sorted((ci for ci in selected if _qualifies(ci, hl)), key=rank_key)

    out: list[ClassifiedItem] = []
    groups: dict[str, int] = {}
    for ci in candidates:
        if len(out) >= limit:
            break
        g = domain_group(ci.domain, hl)
        if g is not None and groups.get(g, 0) >= hl.max_per_domain_group:
            continue
        out.append(ci)
        if g is not None:
            groups[g] = groups.get(g, 0) + 1

    if hl.must_represent and not any(ci.category in hl.must_represent for ci in out):
        filler = _must_represent_candidate(out, sections, pool, rules)
        if filler is not None:
            if len(out) >= limit:
                dropped = out.pop()
                logger.debug("headline replaced title=%r by must-represent title=%r", dropped.title, filler.title)
            out.append(filler)
            out.sort(key=rank_key)
        else:
            logger.debug("headline must-represent unsatisfied categories=%s", ",".join(hl.must_represent))
    return out


def _must_represent_candidate(
    headline_items: list[ClassifiedItem],
    sections: dict[str, list[ClassifiedItem]],
    pool: list[ClassifiedItem],
    rules: ClassificationRules,
) -> ClassifiedItem | None:
    hl = rules.headline
    limit = headline_limit(rules)
    selected = {ci.order for items in sections.values() for ci in items}
    # The slot a full headline would give up.
    kept = headline_items if len(headline_items) < limit else headline_items[:-1]
    if limit <= 0:
        return None
    groups: dict[str, int] = {}
    for ci in kept:
        g = domain_group(ci.domain, hl)
        if g is not None:
            groups[g] = groups.get(g, 0) + 1

    for ci in sorted(pool, key=rank_key):
        if ci.category not in hl.must_represent or not _qualifies(ci, hl):
            continue
        g = domain_group(ci.domain, hl)
        if g is not None and groups.get(g, 0) >= hl.max_per_domain_group:
            continue
        if ci.order not in selected and not _fits_clusters(ci, sections, rules.clusters):
            continue
        return ci
    return None


def balance(classified: list[ClassifiedItem], rules: ClassificationRules) -> dict[str, list[ClassifiedItem]]:
    sections = cap_per_category(classified, rules.max_items_per_category)
    sections = apply_total_budget(sections, rules.max_total_items)
    sections = enforce_cluster_caps(sections, classified, rules)
    out: dict[str, list[ClassifiedItem]] = {k: [] for k in SECTION_KEYS}
    for k, items in sections.items():
        out[k] = sorted(items, key=rank_key)
    out[HEADLINE_SECTION] = select_headline(sections, classified, rules)
    return out


def selection_stats(sections: dict[str, list[ClassifiedItem]], rules: ClassificationRules) -> dict[str, Any]:
    """Per-section counts and cluster fractions over the unique selected items."""
    unique: dict[int, ClassifiedItem] = {}
    for items in sections.values():
        for ci in items:
            unique.setdefault(ci.order, ci)
    total = len(unique)
    clusters: dict[str, float] = {}
    for cl in rules.clusters:
        n = sum(1 for ci in unique.values() if ci.category in cl.categories)
        clusters[cl.name] = round(n / total, 4) if total else 0.0
    return {
        "counts": {k: len(sections.get(k, [])) for k in SECTION_KEYS},
        "total_selected": total,
        "clusters": clusters,
    }
