"""
MonitHQ - DNS and Performance Check Tests
"""

import asyncio
import gzip

import pytest
import httpx
import dns.exception
import dns.rdataset
import dns.resolver
from unittest.mock import MagicMock

import dns_checker
import performance_checker
from constants import get_response_time_range
from dns_checker import (
    extract_hostname,
    records_from_answer,
    perform_dns_check,
    detect_dns_changes,
    get_dns_statistics,
)
from performance_checker import (
    analyze_resources,
    analyze_performance_trend,
    calculate_performance_score,
    perform_performance_check,
)

SITE = {"id": "site-1", "organization_id": "org-1", "name": "Example", "url": "https://www.example.com/shop"}

RECORDS = {
    "A": ["93.184.216.34"],
    "AAAA": ["2606:2800:220:1::1"],
    "CNAME": [],
    "MX": [{"priority": 10, "exchange": "mail.example.com"}],
    "NS": ["a.iana-servers.net", "b.iana-servers.net"],
    "TXT": ["v=spf1 -all"],
    "SOA": [{"mname": "ns.icann.org", "rname": "noc.dns.icann.org", "serial": 2026030101,
             "refresh": 7200, "retry": 3600, "expire": 1209600, "minimum": 3600}],
}


def fake_resolver(records=None, failures=None):
    records = records or RECORDS
    failures = failures or {}
    seen = []

    def resolve(hostname, record_type, timeout):
        seen.append((hostname, record_type))
        if record_type in failures:
            raise failures[record_type]
        return list(records.get(record_type, []))

    resolve.seen = seen
    return resolve


class TestDnsRecords:

    @pytest.mark.parametrize("value,expected", [
        ("https://www.Example.com/shop?x=1", "example.com"),
        ("http://api.example.com:8080", "api.example.com"),
        ("example.com/path", "example.com"),
        ("www.example.org", "example.org"),
    ])
    def test_extract_hostname(self, value, expected):
        assert extract_hostname(value) == expected

    def test_mx_records_are_sorted_by_priority(self):
        answer = dns.rdataset.from_text("IN", "MX", 300, "20 backup.example.com.", "10 mail.example.com.")
        assert records_from_answer("MX", answer) == [
            {"priority": 10, "exchange": "mail.example.com"},
            {"priority": 20, "exchange": "backup.example.com"},
        ]

    def test_txt_and_soa_records(self):
        txt = dns.rdataset.from_text("IN", "TXT", 300, '"v=spf1 " "-all"')
        assert records_from_answer("TXT", txt) == ["v=spf1 -all"]

        soa = dns.rdataset.from_text("IN", "SOA", 300,
                                     "ns.icann.org. noc.dns.icann.org. 2026030101 7200 3600 1209600 3600")
        assert records_from_answer("SOA", soa)[0]["serial"] == 2026030101
        assert records_from_answer("SOA", soa)[0]["mname"] == "ns.icann.org"

    def test_ns_names_lose_the_trailing_dot(self):
        ns = dns.rdataset.from_text("IN", "NS", 300, "b.iana-servers.net.", "a.iana-servers.net.")
        assert records_from_answer("NS", ns) == ["a.iana-servers.net", "b.iana-servers.net"]


class TestDnsCheck:

    def test_all_record_types_are_resolved(self):
        resolver = fake_resolver()
        results = asyncio.run(perform_dns_check(SITE["url"], resolver=resolver))

        assert results["success"] is True
        assert results["hostname"] == "example.com"
        assert results["a_records"] == ["93.184.216.34"]
        assert results["mx_records"][0]["exchange"] == "mail.example.com"
        assert results["soa_record"]["serial"] == 2026030101
        assert len(results["records_hash"]) == 64
        assert {t for _, t in resolver.seen} == {"A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA"}

    def test_one_failed_type_is_left_empty(self):
        resolver = fake_resolver(failures={"TXT": dns.exception.Timeout()})
        results = asyncio.run(perform_dns_check(SITE["url"], resolver=resolver))
        assert results["success"] is True
        assert results["txt_records"] == []
        assert results["a_records"] == ["93.184.216.34"]

    def test_unknown_domain_fails(self):
        failures = {t: dns.resolver.NXDOMAIN() for t in ("A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA")}
        results = asyncio.run(perform_dns_check("https://nope.invalid", resolver=fake_resolver(failures=failures)))
        assert results["success"] is False
        assert results["error_message"].startswith("NXDOMAIN")
        assert results["records_hash"] is None

    def test_hash_follows_the_records(self):
        first = asyncio.run(perform_dns_check(SITE["url"], resolver=fake_resolver()))
        same = asyncio.run(perform_dns_check(SITE["url"], resolver=fake_resolver()))
        moved = asyncio.run(perform_dns_check(SITE["url"], resolver=fake_resolver({**RECORDS, "A": ["10.0.0.1"]})))
        assert first["records_hash"] == same["records_hash"]
        assert first["records_hash"] != moved["records_hash"]

    def test_changes_are_reported_per_type(self):
        previous = {"a_records": ["93.184.216.34"], "ns_records": ["a.iana-servers.net"]}
        current = {"a_records": ["10.0.0.1"], "ns_records": ["a.iana-servers.net"]}
        changes = detect_dns_changes(current, previous)
        assert changes == {
            "has_changes": True,
            "changes": [{"type": "A", "previous": ["93.184.216.34"], "current": ["10.0.0.1"]}],
        }
        assert detect_dns_changes(current, None) == {"has_changes": False, "changes": []}

    def test_statistics(self):
        results = asyncio.run(perform_dns_check(SITE["url"], resolver=fake_resolver()))
        stats = get_dns_statistics(results)
        assert stats["total_records"] == 6
        assert stats["record_types"]["SOA"] == 1
        assert stats["has_ipv6"] is True
        assert stats["has_mail_servers"] is True
        assert stats["nameserver_count"] == 2


class TestDnsStorage:

    def previous_row(self, supabase, row):
        supabase.tables["dns_checks"].select.return_value.eq.return_value.eq.return_value\
            .order.return_value.limit.return_value.execute.return_value = MagicMock(data=[row] if row else [])
        supabase.tables["dns_checks"].insert.return_value.execute.return_value = MagicMock(data=[])

    def test_change_against_last_successful_check(self, supabase):
        self.previous_row(supabase, {"a_records": ["10.0.0.1"], "aaaa_records": ["2606:2800:220:1::1"],
                                     "cname_records": [], "mx_records": RECORDS["MX"],
                                     "ns_records": RECORDS["NS"], "txt_records": RECORDS["TXT"],
                                     "records_hash": "old"})

        outcome = dns_checker.run_dns_check(supabase, SITE, resolver=fake_resolver())

        row = supabase.tables["dns_checks"].insert.call_args[0][0]
        assert row["site_id"] == "site-1"
        assert row["changes_detected"] is True
        assert row["previous_hash"] == "old"
        assert row["nameservers"] == RECORDS["NS"]
        assert outcome["change_detection"]["changes"][0]["type"] == "A"
        supabase.tables["dns_checks"].select.return_value.eq.return_value.eq.assert_called_once_with("success", True)

    def test_first_check_has_no_changes(self, supabase):
        self.previous_row(supabase, None)
        outcome = dns_checker.run_dns_check(supabase, SITE, resolver=fake_resolver())
        assert supabase.tables["dns_checks"].insert.call_args[0][0]["changes_detected"] is False
        assert outcome["statistics"]["total_records"] == 6

    def test_failed_lookup_is_not_a_change(self, supabase):
        self.previous_row(supabase, {"a_records": ["93.184.216.34"], "records_hash": "old"})
        failures = {t: dns.resolver.NXDOMAIN() for t in ("A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA")}

        outcome = dns_checker.run_dns_check(supabase, SITE, resolver=fake_resolver(failures=failures))

        row = supabase.tables["dns_checks"].insert.call_args[0][0]
        assert row["success"] is False
        assert row["changes_detected"] is False
        assert outcome["change_detection"]["has_changes"] is False

    def test_history_defaults_to_changes_only(self, supabase):
        query = supabase.tables["dns_checks"].select.return_value.eq.return_value
        query.eq.return_value.order.return_value.limit.return_value.execute.return_value = MagicMock(
            data=[{"id": "dns-2", "changes_detected": True}]
        )
        query.order.return_value.limit.return_value.execute.return_value = MagicMock(
            data=[{"id": "dns-3", "a_records": ["10.0.0.1"], "aaaa_records": [], "cname_records": [],
                   "mx_records": [], "ns_records": [], "txt_records": [], "soa_record": None}]
        )

        history = dns_checker.list_dns_checks(supabase, "site-1")

        query.eq.assert_called_once_with("changes_detected", True)
        assert history["count"] == 1
        assert history["latest"]["id"] == "dns-3"
        assert history["statistics"]["total_records"] == 1


PAGE = """<html><head>
<link rel="stylesheet" href="/app.css">
<link rel="preload" href="/fonts/inter.woff2" as="font">
<script src="/app.js"></script>
</head><body><img src="/hero.png"><img src="/logo.svg"></body></html>"""


def page_transport(compressed=True, redirect=False):
    def handler(request):
        if redirect and request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "https://example.com/"})
        headers = {"Content-Type": "text/html; charset=utf-8"}
        body = PAGE.encode()
        if compressed:
            headers["Content-Encoding"] = "gzip"
            body = gzip.compress(body)
        return httpx.Response(200, headers=headers, content=body)
    return httpx.MockTransport(handler)


class TestPerformanceCheck:

    def test_measured_page(self):
        results = asyncio.run(perform_performance_check("example.com", transport=page_transport()))

        assert results["success"] is True
        assert results["url"] == "https://example.com"
        assert results["status_code"] == 200
        assert results["compression"] is True
        assert results["response_size"] == len(PAGE.encode())
        assert results["redirect_count"] == 0
        assert results["tcp_time"] is None
        assert results["resource_count"] == 5
        assert results["speed"] == get_response_time_range(results["ttfb"])
        assert results["performance_score"] == 100
        assert results["grade"] == "A"
        assert [r["category"] for r in results["recommendations"]] == ["caching"]

    def test_uncompressed_redirected_page(self):
        results = asyncio.run(perform_performance_check(
            "https://example.com/old", transport=page_transport(compressed=False, redirect=True),
        ))

        assert results["redirect_count"] == 1
        assert results["final_url"] == "https://example.com/"
        assert results["performance_score"] == 85
        assert "no_compression" in {i["type"] for i in results["issues"]}
        assert results["recommendations"][0]["category"] == "compression"

    def test_unreachable_site(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        results = asyncio.run(perform_performance_check(
            "https://example.com", timeout=3, transport=httpx.MockTransport(handler),
        ))

        assert results["success"] is False
        assert results["error_message"] == "Timeout after 3s"

    def test_resource_analysis(self):
        analysis = analyze_resources(PAGE)
        assert analysis["resource_breakdown"] == {"scripts": 1, "stylesheets": 1, "images": 2, "fonts": 1}
        assert analysis["estimated_fcp"] == 700
        assert analysis["estimated_lcp"] == 1200
        assert analysis["resource_sizes"]["total"] == 50 + 30 + 200 + 40

    @pytest.mark.parametrize("data,score,grade", [
        ({"ttfb": 100, "download_time": 100, "compression": True}, 100, "A"),
        ({"ttfb": 700, "download_time": 600, "compression": True}, 70, "C"),
        ({"ttfb": 2000, "download_time": 2500, "compression": False, "redirect_count": 3,
          "response_size": 600 * 1024}, 0, "F"),
    ])
    def test_scoring(self, data, score, grade):
        assert calculate_performance_score(data) == (score, grade)

    def test_stored_check(self, supabase):
        supabase.tables["performance_checks"].insert.return_value.execute.return_value = MagicMock(data=[])

        outcome = performance_checker.run_performance_check(supabase, SITE, transport=page_transport())

        row = supabase.tables["performance_checks"].insert.call_args[0][0]
        assert row["site_id"] == "site-1"
        assert row["grade"] == "A"
        assert "html" not in row
        assert outcome["statistics"]["issue_count"] == 0


class TestPerformanceTrend:

    def test_too_little_history_is_stable(self):
        assert analyze_performance_trend([{"performance_score": 90}]) == {
            "trend": "stable", "score_change": 0, "ttfb_change": 0,
        }

    def test_improving(self):
        trend = analyze_performance_trend([
            {"performance_score": 95, "ttfb": 120},
            {"performance_score": 80, "ttfb": 420},
            {"performance_score": 80, "ttfb": 300},
        ])
        assert trend["trend"] == "improving"
        assert trend["score_change"] == 15
        assert trend["ttfb_change"] == -300
        assert trend["average_score"] == 85.0
        assert trend["average_ttfb"] == 280.0

    def test_small_moves_are_stable(self):
        trend = analyze_performance_trend([{"performance_score": 88, "ttfb": 200},
                                           {"performance_score": 90, "ttfb": None}])
        assert trend["trend"] == "stable"
        assert trend["ttfb_change"] == 200
