from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser

from intel_scan.core.models import CandidateItem
from intel_scan.rules.models import SourceSpec
from intel_scan.utils.url_norm import canonicalize_url, host_of


logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 IntelScan/1.0"
FEED_TYPES = frozenset({"rss", "atom", "github_releases"})
MAX_ENTRIES_PER_FEED = 50


def _fetch_url_with_retry(url: str, headers: dict[str, str], timeout: int, retries: int) -> dict[str, Any]:
    attempt = 0
    last_err = ""
    last_type = "network_error"
    while attempt <= max(0, retries):
        attempt += 1
        req = Request(url, headers=headers)
        try:
            with urlopen(req, timeout=timeout) as r:
                data = r.read()
                return {
                    "ok": True,
                    "data": data,
                    "http_status": int(getattr(r, "status", 200)),
                    "error_type": "",
                    "error_message": "",
                }
        except HTTPError as e:
            last_type = "http_error"
            last_err = f"HTTPError: {getattr(e, 'code', '')} {e}"
            if int(getattr(e, "code", 0) or 0) in (403, 404):
                break
        except TimeoutError as e:
            last_type = "timeout"
            last_err = f"TimeoutError: {e}"
        except URLError as e:
            msg = str(getattr(e, "reason", e))
            last_type = "timeout" if "timed out" in msg.lower() else "network_error"
            last_err = f"URLError: {msg}"
        except OSError as e:
            last_type = "network_error"
            last_err = f"{type(e).__name__}: {e}"
        if attempt <= retries:
            time.sleep(min(1.5, 0.25 * (2 ** (attempt - 1))))
    return {
        "ok": False,
        "data": b"",
        "http_status": None,
        "error_type": last_type,
        "error_message": last_err or "request failed",
    }


def parse_entry_date(entry: Any, now: datetime) -> datetime | None:
    """Explicit entry date, ``now`` when the entry carries none, None when unparsable."""
    for key in ("published_parsed", "updated_parsed"):
        st = entry.get(key)
        if st:
            return datetime(*st[:6], tzinfo=timezone.utc)
    raw = str(entry.get("published") or entry.get("updated") or "").strip()
    if not raw:
        return now
    dt: datetime | None
    try:
        dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("unparsable entry date value=%r", raw)
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def entries_to_items(
    source: SourceSpec,
    entries: Sequence[Any],
    lookback_hours: int,
    now: datetime,
    *,
    max_entries: int = MAX_ENTRIES_PER_FEED,
) -> list[CandidateItem]:
    cutoff = now - timedelta(hours=lookback_hours)
    keywords = tuple(k.lower() for k in source.keywords)
    out: list[CandidateItem] = []
    stale = 0
    for e in list(entries)[: max(1, max_entries)]:
        title = str(e.get("title") or "").strip() or f"{source.name} update"
        if keywords and not any(k in title.lower() for k in keywords):
            continue
        published = parse_entry_date(e, now)
        if published is not None and published < cutoff:
            stale += 1
            continue
        url = canonicalize_url(str(e.get("link") or "").strip() or source.feed_url)
        out.append(
            CandidateItem(
                title=title,
                source_name=source.name,
                source_url=url,
                published_at=published,
                domain=host_of(url),
                summary=str(e.get("summary") or "").strip(),
                category_hint=source.category,
            )
        )
    logger.debug("source filtered source=%s kept=%d stale=%d", source.name, len(out), stale)
    return out


def fetch_source(
    source: SourceSpec,
    lookback_hours: int,
    *,
    now: datetime | None = None,
    max_entries: int = MAX_ENTRIES_PER_FEED,
    timeout: int = 20,
    retries: int = 2,
) -> list[CandidateItem]:
    """Fetch one source; any failure yields an empty list."""
    now = now or datetime.now(timezone.utc)
    if source.type not in FEED_TYPES:
        logger.warning("unsupported source type source=%s type=%s", source.name, source.type)
        return []
    url = source.feed_url
    try:
        res = _fetch_url_with_retry(url, {"User-Agent": USER_AGENT}, timeout, retries)
        if not res.get("ok"):
            logger.warning(
                "source fetch failed source=%s url=%s error_type=%s error=%s",
                source.name,
                url,
                res.get("error_type"),
                res.get("error_message"),
            )
            return []
        feed = feedparser.parse(bytes(res.get("data") or b""))
        if getattr(feed, "bozo", False) and not feed.entries:
            logger.warning("source parse failed source=%s url=%s error=%s", source.name, url, feed.get("bozo_exception"))
            return []
        items = entries_to_items(source, feed.entries, lookback_hours, now, max_entries=max_entries)
    except Exception as e:
        logger.warning("source fetch failed source=%s url=%s error=%s: %s", source.name, url, type(e).__name__, e)
        return []
    logger.info("source fetched source=%s items=%d", source.name, len(items))
    return items

