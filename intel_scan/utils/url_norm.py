from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


logger = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_id",
        "utm_name",
        "gclid",
        "dclid",
        "fbclid",
        "msclkid",
        "igshid",
        "_ga",
        "mc_cid",
        "mc_eid",
    }
)

DEFAULT_ALLOWLIST = frozenset(
    {
        # AWS
        "aws.amazon.com",
        "alas.aws.amazon.com",
        "docs.aws.amazon.com",
        # Standards & interop
        "blog.hl7.org",
        "hl7news.hl7.org",
        "fhir.org",
        "fhirblog.com",
        "digital.nhs.uk",
        "england.nhs.uk",
        "standards.nhs.uk",
        "healthit.gov",
        "cms.gov",
        # Regulators
        "fda.gov",
        "gov.uk",
        "yellowcard.mhra.gov.uk",
        "ema.europa.eu",
        "imdrf.org",
        "hpra.ie",
        "has-sante.fr",
        "ansm.sante.fr",
        "cnil.fr",
        "bfarm.de",
        "gematik.de",
        "aemps.gob.es",
        "aepd.es",
        "canada.ca",
        "cihi.ca",
        "infoway-inforoute.ca",
        # AI vendors & research
        "openai.com",
        "anthropic.com",
        "huggingface.co",
        "ai.nejm.org",
        "nature.com",
        "thelancet.com",
        # Corporate
        "investors.hims.com",
        "news.hims.com",
        "sec.gov",
        "find-and-update.company-information.service.gov.uk",
        # Security
        "nvd.nist.gov",
        "cisa.gov",
        "github.com",
        "cvedetails.com",
        "tenable.com",
        # CNCF & DevX
        "cncf.io",
        "serverlessland.com",
        "serverless.com",
        "backstage.spotify.com",
        "backstage.io",
        "thoughtworks.com",
        "infoq.com",
        "thenewstack.io",
        # Stack releases
        "go.dev",
    }
)


def _is_tracking(key: str) -> bool:
    k = key.lower()
    return k in TRACKING_PARAMS or k.startswith("utm_")


def canonicalize_url(raw_url: str) -> str:
    """Canonical form used for dedup keys and outbound links.

    Forces https, lowercases the host, drops tracking params and fragments and
    strips a single trailing slash from non-root paths. Input that does not look
    like an absolute http(s) URL is returned as-is.
    """
    raw = str(raw_url or "").strip()
    try:
        p = urlparse(raw)
        if p.scheme.lower() not in ("http", "https") or not p.hostname:
            raise ValueError("not an absolute http(s) url")
        netloc = p.hostname.lower()
        if p.port and p.port not in (80, 443):
            netloc = f"{netloc}:{p.port}"
        if p.username:
            creds = p.username + (f":{p.password}" if p.password else "")
            netloc = f"{creds}@{netloc}"
        path = p.path or "/"
        if path != "/" and path.endswith("/"):
            path = path[:-1]
        kept = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if not _is_tracking(k)]
        query = urlencode(kept, doseq=True)
        return urlunparse(("https", netloc, path, p.params, query, ""))
    except ValueError as e:
        logger.warning("failed to canonicalize url=%r error=%s", raw_url, e)
        return raw_url


def host_of(url: str) -> str:
    try:
        return str(urlparse(str(url or "")).hostname or "").strip().lower()
    except ValueError:
        return ""


def is_domain_allowed(url: str, allowlist: Iterable[str]) -> bool:
    try:
        netloc = urlparse(str(url or "")).netloc
    except ValueError:
        return False
    # Exact match against the host as written (urlparse().hostname lowercases).
    host = netloc.rsplit("@", 1)[-1].split(":", 1)[0]
    if not host:
        return False
    return host in set(allowlist)


def domain_matches(host: str, domains: Iterable[str]) -> bool:
    h = str(host or "").strip().lower()
    if not h:
        return False
    for d in domains:
        dd = str(d or "").strip().lower().lstrip(".")
        if dd and (h == dd or h.endswith("." + dd)):
            return True
    return False


@dataclass(frozen=True)
class DomainAllowlist:
    domains: frozenset[str] = DEFAULT_ALLOWLIST
    enabled: bool = True

    def allows(self, url: str) -> bool:
        if not self.enabled:
            return True
        return is_domain_allowed(url, self.domains)
