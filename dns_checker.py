"""
MonitHQ - DNS Monitoring
Resolves a site's DNS records, fingerprints them, and flags changes between
consecutive checks.

Records are stored per check in the dns_checks table; the newest row is the
baseline the next check is compared against.
"""

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlsplit

import dns.resolver

logger = logging.getLogger(__name__)

RECORD_TYPES = ("A", "AAAA", "CNAME", "MX", "NS", "TXT")
DNS_TIMEOUT_SECONDS = 5

# record type -> dns_checks column
RECORD_COLUMNS = {
    "A": "a_records",
    "AAAA": "aaaa_records",
    "CNAME": "cname_records",
    "MX": "mx_records",
    "NS": "ns_records",
    "TXT": "txt_records",
}


def extract_hostname(url: str) -> str:
    """Hostname from a URL or bare domain, lowercased, without a leading www."""
    value = (url or "").strip()
    if "://" in value:
        value = urlsplit(value).hostname or ""
    else:
        value = value.split("/", 1)[0].split(":", 1)[0]
    value = value.lower()
    if value.startswith("www."):
        value = value[4:]
    return value


def _name(value) -> str:
    return str(value).rstrip(".")


def records_from_answer(record_type: str, answer) -> list:
    """Plain JSON-friendly values from dnspython rdata."""
    out = []
    for rr in answer:
        if record_type == "MX":
            out.append({"priority": int(rr.preference), "exchange": _name(rr.exchange)})
        elif record_type == "TXT":
            out.append(b"".join(rr.strings).decode("utf-8", errors="replace"))
        elif record_type in ("CNAME", "NS"):
            out.append(_name(rr.target))
        elif record_type == "SOA":
            out.append({
                "mname": _name(rr.mname),
                "rname": _name(rr.rname),
                "serial": int(rr.serial),
                "refresh": int(rr.refresh),
                "retry": int(rr.retry),
                "expire": int(rr.expire),
                "minimum": int(rr.minimum),
            })
        else:
            out.append(rr.to_text())
    if record_type == "MX":
        return sorted(out, key=lambda r: (r["priority"], r["exchange"]))
    if record_type == "SOA":
        return out
    return sorted(out)


def resolve_records(hostname: str, record_type: str, timeout: float = DNS_TIMEOUT_SECONDS) -> list:
    """Blocking lookup of one record type. A name without such records gives []."""
    resolver = dns.resolver.Resolver(configure=True)
    resolver.timeout = max(0.5, float(timeout))
    resolver.lifetime = max(0.5, float(timeout))
    try:
        answer = resolver.resolve(hostname, record_type)
    except dns.resolver.NoAnswer:
        return []
    return records_from_answer(record_type, answer)


def records_hash(results: dict) -> str:
    """SHA-256 over every record set, stable under key order."""
    data = {rtype: results.get(col) or [] for rtype, col in RECORD_COLUMNS.items()}
    data["SOA"] = results.get("soa_record")
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()


async def perform_dns_check(url: str, timeout: float = DNS_TIMEOUT_SECONDS,
                            resolver: Optional[Callable] = None) -> dict:
    """
    Resolve every monitored record type for the URL's host in parallel.

    `resolver(hostname, record_type, timeout)` does one blocking lookup; it runs
    in a worker thread. A failed record type is logged and left empty. The
    check only fails when the name does not exist or every lookup failed.
    """
    resolver = resolver or resolve_records
    hostname = extract_hostname(url)
    start = time.monotonic()

    types = RECORD_TYPES + ("SOA",)
    outcomes = await asyncio.gather(
        *(asyncio.to_thread(resolver, hostname, rtype, timeout) for rtype in types),
        return_exceptions=True,
    )
    resolution_time = int((time.monotonic() - start) * 1000)

    results = {"hostname": hostname, "resolution_time": resolution_time}
    errors = []
    for rtype, outcome in zip(types, outcomes):
        if isinstance(outcome, Exception):
            errors.append((rtype, outcome))
            logger.warning(f"{rtype} lookup failed for {hostname}: {type(outcome).__name__}: {outcome}")
            outcome = []
        if rtype == "SOA":
            results["soa_record"] = outcome[0] if outcome else None
        else:
            results[RECORD_COLUMNS[rtype]] = outcome

    nxdomain = next((e for _, e in errors if isinstance(e, dns.resolver.NXDOMAIN)), None)
    if nxdomain is not None or len(errors) == len(types):
        error = nxdomain or errors[0][1]
        results.update({
            "success": False,
            "error_message": f"{type(error).__name__}: {error}",
            "records_hash": None,
        })
        return results

    results.update({"success": True, "error_message": None, "records_hash": records_hash(results)})
    return results


def detect_dns_changes(current: dict, previous: Optional[dict]) -> dict:
    """Per-type differences between two checks. No previous check means no changes."""
    if not previous:
        return {"has_changes": False, "changes": []}

    changes = []
    for rtype, col in RECORD_COLUMNS.items():
        before = previous.get(col) or []
        after = current.get(col) or []
        if before != after:
            changes.append({"type": rtype, "previous": before, "current": after})
    return {"has_changes": bool(changes), "changes": changes}


def get_dns_statistics(results: dict) -> dict:
    counts = {rtype: len(results.get(col) or []) for rtype, col in RECORD_COLUMNS.items()}
    counts["SOA"] = 1 if results.get("soa_record") else 0
    return {
        "total_records": sum(v for k, v in counts.items() if k != "SOA"),
        "record_types": counts,
        "has_ipv6": counts["AAAA"] > 0,
        "has_mail_servers": counts["MX"] > 0,
        "nameserver_count": counts["NS"],
    }


def format_dns_check_row(site_id: str, results: dict, previous: Optional[dict],
                         checked_at: Optional[str] = None) -> dict:
    """dns_checks row for a check, compared against the previous row."""
    row = {"site_id": site_id}
    row.update({k: results.get(k) for k in (
        "hostname", "resolution_time", "soa_record", "records_hash", "success", "error_message",
    )})
    row.update({col: results.get(col) or [] for col in RECORD_COLUMNS.values()})
    row["nameservers"] = row["ns_records"]
    # A failed lookup is not a change in the records
    row["changes_detected"] = bool(results.get("success")) and \
        detect_dns_changes(results, previous)["has_changes"]
    row["previous_hash"] = (previous or {}).get("records_hash")
    row["checked_at"] = checked_at or datetime.now(timezone.utc).isoformat()
    return row


def _latest_check(supabase, site_id: str, successful_only: bool = False) -> Optional[dict]:
    query = supabase.table("dns_checks").select("*").eq("site_id", site_id)
    if successful_only:
        query = query.eq("success", True)
    result = query\
        .order("checked_at", desc=True)\
        .limit(1)\
        .execute()
    return (result.data or [None])[0]


def run_dns_check(supabase, site: dict, timeout: float = DNS_TIMEOUT_SECONDS,
                  resolver: Optional[Callable] = None) -> dict:
    """Check a site's DNS, store the result and report what changed."""
    previous = _latest_check(supabase, site["id"], successful_only=True)
    results = asyncio.run(perform_dns_check(site["url"], timeout, resolver))

    row = format_dns_check_row(site["id"], results, previous)
    inserted = supabase.table("dns_checks").insert(row).execute()

    changes = detect_dns_changes(results, previous) if results["success"] else {"has_changes": False, "changes": []}
    if changes["has_changes"]:
        changed = ", ".join(c["type"] for c in changes["changes"])
        logger.warning(f"DNS records changed for {site.get('name')} ({results['hostname']}): {changed}")

    return {
        "check": (inserted.data or [row])[0],
        "statistics": get_dns_statistics(results),
        "change_detection": changes,
    }


def list_dns_checks(supabase, site_id: str, limit: int = 10, include_unchanged: bool = False) -> dict:
    """DNS check history (changes only unless asked otherwise) plus the latest state."""
    query = supabase.table("dns_checks").select("*").eq("site_id", site_id)
    if not include_unchanged:
        query = query.eq("changes_detected", True)
    checks = query.order("checked_at", desc=True).limit(limit).execute().data or []

    latest = _latest_check(supabase, site_id)
    return {
        "checks": checks,
        "latest": latest,
        "statistics": get_dns_statistics(latest) if latest else None,
        "count": len(checks),
    }
