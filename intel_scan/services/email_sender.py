from __future__ import annotations

import email.utils
import logging
import os
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any

from intel_scan.core.models import SECTION_KEYS
from intel_scan.core.report import ScanResult


logger = logging.getLogger(__name__)

SECTION_TITLES = {
    "top_signals": "Top signals",
    "trend_watchlist": "Trend watchlist",
    "security_alerts": "Security alerts",
    "aws_platform_changes": "AWS platform changes",
    "ai_trends": "AI trends",
    "corporate_competitors": "Corporate & competitors",
    "developer_experience": "Developer experience",
}


def env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _entry_lines(idx: int, e: dict[str, Any]) -> list[str]:
    sev = str(e.get("severity", "low")).upper()
    impact = ", ".join(str(x) for x in e.get("impact", []) or [])
    lines = [f"{idx}. [{sev}] {e.get('title', '')}"]
    if e.get("summary"):
        lines.append(f"   {e['summary']}")
    meta = [x for x in (str(e.get("source", "")), impact, (e.get("published_at") or "")[:10]) if x]
    if meta:
        lines.append(f"   {' | '.join(meta)}")
    lines.append(f"   {e.get('source_url', '')}")
    return lines


def render_text(result: ScanResult) -> str:
    """Plain-text email body: one block per non-empty section."""
    lines = [f"Daily scan {result.date} ({result.timezone})", ""]
    any_items = False
    for key in SECTION_KEYS:
        entries = result.sections.get(key, [])
        if not entries:
            continue
        any_items = True
        title = SECTION_TITLES.get(key, key)
        lines.append(title)
        lines.append("-" * len(title))
        for i, e in enumerate(entries, 1):
            lines.extend(_entry_lines(i, e))
        lines.append("")
    if not any_items:
        lines.append("No items matched today's scan.")
        lines.append("")
    lines.append(f"{len(result.raw_feed)} candidate items considered.")
    return "\n".join(lines)


def build_subject(prefix: str, date: str) -> str:
    return f"{prefix} — {date}"


@dataclass(frozen=True)
class SmtpEmailSender:
    host: str
    port: int
    user: str
    password: str
    timeout: int = 30

    @classmethod
    def from_env(cls) -> "SmtpEmailSender | None":
        missing = [k for k in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS") if not env(k)]
        if missing:
            logger.warning("email sender disabled, missing env vars=%s", ",".join(missing))
            return None
        return cls(
            host=env("SMTP_HOST"),
            port=int(env("SMTP_PORT") or "587"),
            user=env("SMTP_USER"),
            password=env("SMTP_PASS"),
        )

    def send(self, *, subject: str, body: str, to_address: str, from_address: str = "") -> None:
        sender = from_address or self.user
        msg = MIMEText(body, _charset="utf-8")
        msg["From"] = sender
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Date"] = email.utils.formatdate(localtime=True)

        context = ssl.create_default_context()
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls(context=context)
            server.login(self.user, self.password)
            server.sendmail(sender, [to_address], msg.as_string())
        logger.info("email sent to=%s subject=%r", to_address, subject)
