from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from intel_scan.core.models import CandidateItem, ValidatedItem


logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10
PROBE_BATCH_SIZE = 5
USER_AGENT = "Mozilla/5.0 IntelScan/1.0"


@dataclass(frozen=True)
class ProbeResult:
    url: str
    http_status: int
    is_valid: bool
    method: str
    error: str = ""


def _request_status(url: str, method: str, timeout: int) -> tuple[int, str]:
    req = Request(url, method=method, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as r:
            return int(getattr(r, "status", 200)), ""
    except HTTPError as e:
        return int(getattr(e, "code", 0) or 0), f"HTTPError: {getattr(e, 'code', '')}"
    except TimeoutError as e:
        return 0, f"TimeoutError: {e}"
    except URLError as e:
        return 0, f"URLError: {getattr(e, 'reason', e)}"
    except (OSError, ValueError) as e:
        return 0, f"{type(e).__name__}: {e}"


def probe_url(url: str, timeout: int = PROBE_TIMEOUT_SECONDS) -> ProbeResult:
    """HEAD first; any non-2xx or network error is retried once with GET."""
    status, err = _request_status(url, "HEAD", timeout)
    if 200 <= status < 300:
        return ProbeResult(url=url, http_status=status, is_valid=True, method="HEAD")
    status, err = _request_status(url, "GET", timeout)
    return ProbeResult(url=url, http_status=status, is_valid=200 <= status < 300, method="GET", error=err)


def validate_items(
    items: Sequence[CandidateItem],
    *,
    batch_size: int = PROBE_BATCH_SIZE,
    timeout: int = PROBE_TIMEOUT_SECONDS,
) -> list[ValidatedItem]:
    """Probe items in fixed-size concurrent batches and keep the reachable ones in order."""
    size = max(1, int(batch_size))
    out: list[ValidatedItem] = []
    invalid = 0
    with ThreadPoolExecutor(max_workers=size) as ex:
        for start in range(0, len(items), size):
            batch = list(items[start : start + size])
            results = list(ex.map(lambda it: probe_url(it.source_url, timeout), batch))
            checked_at = datetime.now(timezone.utc)
            for it, res in zip(batch, results):
                if not res.is_valid:
                    invalid += 1
                    logger.debug(
                        "url validation failed url=%s status=%s error=%s",
                        it.source_url,
                        res.http_status,
                        res.error,
                    )
                    continue
                out.append(
                    ValidatedItem(
                        item=it,
                        http_status=res.http_status,
                        checked_at=checked_at,
                        is_valid=True,
                    )
                )
    logger.info("url validation done checked=%d valid=%d invalid=%d", len(items), len(out), invalid)
    return out
