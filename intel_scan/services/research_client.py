from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence
from urllib import request
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse

from intel_scan.core.models import CandidateItem
from intel_scan.utils.url_norm import canonicalize_url, host_of


logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.perplexity.ai/chat/completions"
DEFAULT_MODEL = "sonar-pro"
_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_JSON_SPAN = re.compile(r"\{[\s\S]*\}")


class ResearchError(RuntimeError):
    pass


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    snippet: str = ""
    published_date: str = ""


@dataclass(frozen=True)
class SearchResult:
    """Parsed JSON answer of a structured research call plus the sources it cited."""

    data: dict[str, Any]
    citations: list[Citation] = field(default_factory=list)


def title_from_url(url: str) -> str:
    """Readable title from the last path segment, e.g. ``/new-lambda-runtime.html`` -> ``New Lambda Runtime``."""
    try:
        p = urlparse(str(url or ""))
    except ValueError:
        return str(url or "")
    if not p.hostname:
        return str(url or "")
    parts = [x for x in p.path.split("/") if x]
    last = parts[-1] if parts else p.hostname
    last = re.sub(r"\.\w+$", "", last.replace("-", " ").replace("_", " "))
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), last)


def extract_json(content: str) -> dict[str, Any]:
    text = str(content or "").strip()
    fenced = _JSON_FENCE.search(text)
    if fenced:
        raw = fenced.group(1)
    else:
        span = _JSON_SPAN.search(text)
        raw = span.group(0) if span else text
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ResearchError(f"research response was not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ResearchError("research response JSON is not an object")
    return data


def recency_filter_for(lookback_hours: int) -> str:
    h = int(lookback_hours or 24)
    if h <= 24:
        return "day"
    if h <= 24 * 7:
        return "week"
    if h <= 24 * 31:
        return "month"
    return "year"


class PerplexityClient:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        api_url: str = DEFAULT_API_URL,
        timeout: int = 60,
    ) -> None:
        if not api_key:
            raise ResearchError("PERPLEXITY_API_KEY is not set")
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "PerplexityClient":
        return cls(
            os.environ.get("PERPLEXITY_API_KEY", "").strip(),
            model=os.environ.get("PERPLEXITY_MODEL", "").strip() or DEFAULT_MODEL,
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            self.api_url,
            method="POST",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8", errors="ignore")
        except HTTPError as e:
            detail = e.read().decode("utf-8", errors="ignore")[:500] if hasattr(e, "read") else ""
            logger.error("research api error status=%s error=%s", e.code, detail)
            raise ResearchError(f"research api error: {e.code} - {detail}") from e
        except (URLError, TimeoutError, OSError) as e:
            raise ResearchError(f"research api request failed: {e}") from e
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ResearchError(f"research api returned non-JSON body: {e}") from e
        if not isinstance(obj, dict):
            raise ResearchError("research api returned an unexpected body")
        return obj

    @staticmethod
    def _content(obj: dict[str, Any]) -> str:
        choices = obj.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ResearchError("research api response has no choices")
        msg = choices[0].get("message")
        if not isinstance(msg, dict):
            raise ResearchError("research api response choice has no message")
        return str(msg.get("content", "") or "")

    @staticmethod
    def _citations(obj: dict[str, Any]) -> list[Citation]:
        """Cited sources: ``search_results`` entries when present, else the bare ``citations`` URL list."""
        out: list[Citation] = []
        results = obj.get("search_results")
        if isinstance(results, list) and results:
            for r in results:
                if not isinstance(r, dict) or not str(r.get("url") or "").strip():
                    continue
                out.append(
                    Citation(
                        title=str(r.get("title") or ""),
                        url=str(r["url"]).strip(),
                        snippet=str(r.get("snippet") or ""),
                        published_date=str(r.get("date") or ""),
                    )
                )
            return out
        for u in obj.get("citations") or []:
            if isinstance(u, str) and u.strip():
                out.append(Citation(title="", url=u.strip()))
        return out

    def search_structured(self, query: str, *, recency_filter: str = "day") -> SearchResult:
        logger.info("structured research query model=%s query_length=%d", self.model, len(query))
        obj = self._post(
            {
                "model": self.model,
                "messages": [{"role": "user", "content": query}],
                "temperature": 0.1,
                "max_tokens": 8000,
                "return_citations": True,
                "return_related_questions": False,
                "search_recency_filter": recency_filter,
            }
        )
        content = self._content(obj)
        citations = self._citations(obj)
        logger.info(
            "structured research response content_length=%d citations=%d",
            len(content),
            len(citations),
        )
        try:
            data = extract_json(content)
        except ResearchError:
            logger.error("failed to parse research response as JSON content=%r", content[:500])
            raise
        return SearchResult(data=data, citations=citations)


def parse_day(value: str, now: datetime) -> datetime | None:
    v = str(value or "").strip()
    if not v:
        return now
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_citations_to_items(
    citations: Sequence[Citation],
    source_name: str,
    *,
    now: datetime | None = None,
) -> list[CandidateItem]:
    now = now or datetime.now(timezone.utc)
    out: list[CandidateItem] = []
    for c in citations:
        url = canonicalize_url(c.url)
        out.append(
            CandidateItem(
                title=c.title or title_from_url(c.url),
                source_name=source_name,
                source_url=url,
                published_at=parse_day(c.published_date, now),
                domain=host_of(url) or "unknown",
                summary=c.snippet,
            )
        )
    return out
