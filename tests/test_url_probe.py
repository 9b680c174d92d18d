from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from intel_scan.core.models import CandidateItem
from intel_scan.services.url_probe import probe_url, validate_items


def _item(n: int) -> CandidateItem:
    return CandidateItem(
        title=f"Item {n}",
        source_name="feed",
        source_url=f"https://example.com/{n}",
        published_at=datetime(2025, 3, 10, tzinfo=timezone.utc),
        domain="example.com",
    )


class ProbeUrlTests(unittest.TestCase):
    def test_head_success_skips_get(self) -> None:
        with patch("intel_scan.services.url_probe._request_status", return_value=(200, "")) as m:
            res = probe_url("https://example.com/a")
        self.assertTrue(res.is_valid)
        self.assertEqual(res.method, "HEAD")
        self.assertEqual(m.call_count, 1)

    def test_head_rejected_falls_back_to_get(self) -> None:
        calls: list[str] = []

        def fake(url: str, method: str, timeout: int) -> tuple[int, str]:
            calls.append(method)
            return (405, "HTTPError: 405") if method == "HEAD" else (200, "")

        with patch("intel_scan.services.url_probe._request_status", side_effect=fake):
            res = probe_url("https://example.com/a")
        self.assertEqual(calls, ["HEAD", "GET"])
        self.assertTrue(res.is_valid)
        self.assertEqual(res.http_status, 200)

    def test_both_fail(self) -> None:
        with patch("intel_scan.services.url_probe._request_status", return_value=(0, "URLError: refused")):
            res = probe_url("https://example.com/a")
        self.assertFalse(res.is_valid)
        self.assertEqual(res.error, "URLError: refused")


class ValidateItemsTests(unittest.TestCase):
    def test_keeps_reachable_items_in_order(self) -> None:
        items = [_item(i) for i in range(12)]

        def fake(url: str, method: str, timeout: int) -> tuple[int, str]:
            n = int(url.rsplit("/", 1)[-1])
            return (404, "HTTPError: 404") if n % 3 == 0 else (200, "")

        with patch("intel_scan.services.url_probe._request_status", side_effect=fake):
            out = validate_items(items, batch_size=5)

        self.assertEqual([v.item.title for v in out], [f"Item {i}" for i in range(12) if i % 3 != 0])
        self.assertTrue(all(v.is_valid and v.http_status == 200 for v in out))
        self.assertTrue(all(v.checked_at.tzinfo is not None for v in out))

    def test_empty(self) -> None:
        self.assertEqual(validate_items([]), [])


if __name__ == "__main__":
    unittest.main()
