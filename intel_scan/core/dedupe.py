from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable

from intel_scan.core.models import CandidateItem
from intel_scan.utils.url_norm import canonicalize_url


logger = logging.getLogger(__name__)

NOISE_PREFIX = re.compile(r"^(press release|breaking|update|exclusive|new|announcing)\s*[:\-]\s*", flags=re.I)


def normalize_title(title: str) -> str:
    t = str(title or "").lower().strip()
    t = NOISE_PREFIX.sub("", t)
    t = re.sub(r"[^0-9a-z]+", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    return t


def _ts(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _is_earlier(a: CandidateItem, b: CandidateItem) -> bool:
    """True when ``a`` was published strictly before ``b``.

    An item whose date could not be parsed counts as later than any dated item,
    so a dated duplicate always replaces it.
    """
    if a.published_at is None:
        return False
    if b.published_at is None:
        return True
    return _ts(a.published_at) < _ts(b.published_at)


def dedupe_keys(item: CandidateItem, *, dedupe_by_title: bool = False) -> list[str]:
    keys = [f"url:{canonicalize_url(item.source_url)}"]
    if dedupe_by_title:
        nt = normalize_title(item.title)
        if nt:
            keys.append(f"title:{nt}")
    return keys


def merge_candidates(
    item_sets: Iterable[Iterable[CandidateItem]],
    *,
    dedupe_by_title: bool = False,
) -> list[CandidateItem]:
    """Concatenate fetched item sets and drop duplicates.

    Duplicates share a canonical URL or, when ``dedupe_by_title`` is set, a
    normalized title. The earliest published member of a group is kept and it
    takes the position of the group's first-seen member; on equal timestamps the
    first seen wins.
    """
    kept: list[CandidateItem] = []
    slots: dict[str, int] = {}
    seen = 0
    for items in item_sets:
        for it in items:
            seen += 1
            keys = dedupe_keys(it, dedupe_by_title=dedupe_by_title)
            slot = next((slots[k] for k in keys if k in slots), None)
            if slot is None:
                for k in keys:
                    slots[k] = len(kept)
                kept.append(it)
                continue
            if _is_earlier(it, kept[slot]):
                kept[slot] = it
            for k in keys:
                slots.setdefault(k, slot)

    logger.info("merged candidates in=%d out=%d duplicates=%d", seen, len(kept), seen - len(kept))
    return kept
