"""
MonitHQ - Site Management
Create, list, update and delete monitored sites; uptime statistics and exports.
"""

import csv
import io
import logging
import math
import re
from datetime import datetime, timezone, timedelta
from typing import Optional
from urllib.parse import urlsplit

import pandas as pd

from constants import (
    SITE_STATUS_ONLINE,
    SITE_STATUSES,
    INCIDENT_RESOLVED,
    ROLE_ORG_ADMIN,
    ROLE_SUPER_ADMIN,
    CHECK_INTERVAL_MIN,
    CHECK_INTERVAL_NEW_SITE,
    CHECK_INTERVAL_MAX,
    SSL_ALERT_THRESHOLD_DAYS,
    UPTIME_WINDOW_DAYS,
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
)
from error_handler import ValidationError, PermissionDenied, PlanLimitError, NotFoundError
from plans import get_organization_plan_name, get_plan_limits

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "name", "uptime", "status", "average_latency", "last_checked_at")
UPDATABLE_FIELDS = ("name", "url", "check_interval", "region", "enabled",
                    "ssl_monitoring_enabled", "ssl_alert_threshold")
# Search terms are double-quoted inside or=(); these would still break the filter
SEARCH_UNSAFE = re.compile(r"[%*\"\\]")

EXPORT_COLUMNS = [
    "Site Name",
    "Site URL",
    "Status",
    "Response Time (ms)",
    "Status Code",
    "Error Message",
    "Checked At",
]


def is_valid_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _check_access(user: dict, site: dict):
    if user.get("role") == ROLE_SUPER_ADMIN:
        return
    if site.get("organization_id") != user.get("organization_id"):
        raise PermissionDenied("Forbidden")


def get_site(supabase, user: dict, site_id: str) -> dict:
    """Fetch a site the user may access."""
    result = supabase.table("sites").select("*").eq("id", site_id).execute()
    if not result.data:
        raise NotFoundError("Site not found")
    site = result.data[0]
    _check_access(user, site)
    return site


def _validate_interval(value, plan: str, limits: dict) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Check interval must be a number of seconds")

    if interval < CHECK_INTERVAL_MIN:
        raise ValidationError(f"Check interval must be at least {CHECK_INTERVAL_MIN}s")
    if interval < limits["min_check_interval"]:
        raise PlanLimitError(
            f"Check interval too fast for {plan} plan",
            min_interval=limits["min_check_interval"],
            requested=interval,
            message=f"{plan} plan allows minimum {limits['min_check_interval']}s intervals. "
                    f"Upgrade for faster monitoring.",
        )
    if interval > CHECK_INTERVAL_MAX:
        raise ValidationError(f"Check interval cannot exceed {CHECK_INTERVAL_MAX}s")
    return interval


def create_site(supabase, user: dict, body: dict) -> dict:
    """Validate a new site against input rules and the organization plan, then insert it."""
    name = (body.get("name") or "").strip()
    url = (body.get("url") or "").strip()

    if not name or not url:
        raise ValidationError("Name and URL are required")
    if not is_valid_url(url):
        raise ValidationError("Invalid URL format")

    if user.get("role") == ROLE_ORG_ADMIN and not user.get("email_verified"):
        raise PermissionDenied(
            "Email verification is pending. Please verify your email before creating a site.",
            verify=True,
        )

    org_id = user["organization_id"]
    plan = get_organization_plan_name(supabase, org_id)
    limits = get_plan_limits(supabase, plan)

    count = supabase.table("sites")\
        .select("id", count="exact")\
        .eq("organization_id", org_id)\
        .execute()
    site_count = count.count or 0

    if limits["sites"] != -1 and site_count >= limits["sites"]:
        raise PlanLimitError(
            f"Site limit reached for {plan} plan",
            limit=limits["sites"],
            current=site_count,
            upgrade="Upgrade to add more sites" if plan == "FREE" else None,
        )

    interval = _validate_interval(body.get("check_interval") or CHECK_INTERVAL_NEW_SITE, plan, limits)

    row = {
        "name": name,
        "url": url,
        "check_interval": interval,
        "region": body.get("region") or "US East",
        "organization_id": org_id,
        "created_by_id": user["id"],
        "enabled": True,
    }
    if url.startswith("https://"):
        ssl_enabled = body.get("ssl_monitoring_enabled")
        row["ssl_monitoring_enabled"] = True if ssl_enabled is None else bool(ssl_enabled)
        row["ssl_alert_threshold"] = body.get("ssl_alert_threshold") or SSL_ALERT_THRESHOLD_DAYS

    result = supabase.table("sites").insert(row).execute()
    site = result.data[0]
    logger.info(f"Created site {site['id']} ({name}) for org {org_id}")
    return site


def list_sites(supabase, user: dict, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT,
               status: Optional[str] = None, search: Optional[str] = None,
               sort_by: str = "created_at", sort_order: str = "desc") -> dict:
    """Paginated, filtered list of the user's enabled sites."""
    page = max(1, int(page))
    limit = max(1, min(int(limit), MAX_PAGE_LIMIT))
    if sort_by not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by {sort_by}")

    query = supabase.table("sites").select("*", count="exact").eq("enabled", True)
    if user.get("role") != ROLE_SUPER_ADMIN:
        query = query.eq("organization_id", user["organization_id"])

    if status and status.lower() != "all":
        status = status.upper()
        if status not in SITE_STATUSES:
            raise ValidationError(f"Unknown status {status}")
        query = query.eq("status", status)

    term = SEARCH_UNSAFE.sub("", search or "").strip()
    if term:
        query = query.or_(f'name.ilike."%{term}%",url.ilike."%{term}%"')

    start = (page - 1) * limit
    result = query.order(sort_by, desc=(sort_order.lower() != "asc"))\
        .range(start, start + limit - 1)\
        .execute()

    sites = result.data or []
    total_count = result.count or 0
    total_pages = math.ceil(total_count / limit) if total_count else 0

    for site in sites:
        site["active_incidents"] = _active_incident_count(supabase, site["id"])

    return {
        "success": True,
        "sites": sites,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_count": total_count,
            "limit": limit,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def _active_incident_count(supabase, site_id: str) -> int:
    result = supabase.table("incidents")\
        .select("id", count="exact")\
        .eq("site_id", site_id)\
        .neq("status", INCIDENT_RESOLVED)\
        .execute()
    return result.count or 0


def update_site(supabase, user: dict, site_id: str, body: dict) -> dict:
    site = get_site(supabase, user, site_id)

    update = {k: body[k] for k in UPDATABLE_FIELDS if k in body}
    if not update:
        raise ValidationError("No updatable fields provided")

    if "name" in update and not str(update["name"]).strip():
        raise ValidationError("Name cannot be empty")
    if "url" in update and not is_valid_url(str(update["url"])):
        raise ValidationError("Invalid URL format")
    if "check_interval" in update:
        plan = get_organization_plan_name(supabase, site["organization_id"])
        limits = get_plan_limits(supabase, plan)
        update["check_interval"] = _validate_interval(update["check_interval"], plan, limits)

    update["updated_at"] = datetime.now(timezone.utc).isoformat()
    result = supabase.table("sites").update(update).eq("id", site_id).execute()
    return (result.data or [{**site, **update}])[0]


def delete_site(supabase, user: dict, site_id: str):
    """Delete a site and the rows that hang off it."""
    site = get_site(supabase, user, site_id)
    for table in ("site_checks", "ssl_checks", "dns_checks", "performance_checks",
                  "incidents", "site_subscriptions"):
        supabase.table(table).delete().eq("site_id", site_id).execute()
    supabase.table("sites").delete().eq("id", site_id).execute()
    logger.info(f"Deleted site {site_id}")
    return site


def _checks_since(supabase, site_ids, days: int, columns: str = "*") -> list:
    since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    query = supabase.table("site_checks").select(columns).gte("checked_at", since)
    if isinstance(site_ids, str):
        query = query.eq("site_id", site_ids)
    else:
        query = query.in_("site_id", list(site_ids))
    result = query.order("checked_at", desc=True).execute()
    return result.data or []


def get_uptime_percentage(supabase, site_id: str, days: int = UPTIME_WINDOW_DAYS) -> float:
    """Uptime percentage over the last N days (100 when there is no data)."""
    checks = _checks_since(supabase, site_id, days, "status")
    if not checks:
        return 100.0
    up = sum(1 for c in checks if c["status"] == SITE_STATUS_ONLINE)
    return round((up / len(checks)) * 100, 2)


def get_uptime_trend(supabase, site_id: str, days: int = 7) -> list:
    """Per-day uptime and average response time, oldest day first."""
    checks = _checks_since(supabase, site_id, days, "status,response_time,checked_at")
    if not checks:
        return []

    df = pd.DataFrame(checks)
    df["day"] = pd.to_datetime(df["checked_at"], utc=True, format="ISO8601").dt.strftime("%Y-%m-%d")
    df["online"] = df["status"] == SITE_STATUS_ONLINE

    grouped = df.groupby("day").agg(
        total=("online", "size"),
        online=("online", "sum"),
        avg_response_time=("response_time", "mean"),
    ).reset_index()

    return [
        {
            "date": row.day,
            "uptime": round(row.online / row.total * 100, 2),
            "checks": int(row.total),
            "avg_response_time": int(round(row.avg_response_time or 0)),
        }
        for row in grouped.itertuples()
    ]


def export_uptime(supabase, user: dict, site_id: Optional[str] = None,
                  days: int = UPTIME_WINDOW_DAYS, fmt: str = "json"):
    """Export check history as JSON with statistics, or as CSV text."""
    if site_id:
        sites = [get_site(supabase, user, site_id)]
    else:
        result = supabase.table("sites")\
            .select("id,name,url")\
            .eq("organization_id", user["organization_id"])\
            .execute()
        sites = result.data or []

    by_id = {s["id"]: s for s in sites}
    checks = _checks_since(supabase, list(by_id), days) if by_id else []

    if fmt == "csv":
        rows = [
            [
                by_id[c["site_id"]]["name"],
                by_id[c["site_id"]]["url"],
                c["status"],
                c.get("response_time"),
                c.get("status_code") or "",
                c.get("error_message") or "",
                c["checked_at"],
            ]
            for c in checks
        ]
        buf = io.StringIO()
        pd.DataFrame(rows, columns=EXPORT_COLUMNS).to_csv(buf, index=False, quoting=csv.QUOTE_ALL)
        return buf.getvalue()

    total = len(checks)
    successful = sum(1 for c in checks if c["status"] == SITE_STATUS_ONLINE)
    uptime = (successful / total) * 100 if total else 0
    avg_response = sum(c.get("response_time") or 0 for c in checks) / total if total else 0

    return {
        "checks": checks,
        "statistics": {
            "total_checks": total,
            "successful_checks": successful,
            "failed_checks": total - successful,
            "uptime_percentage": f"{uptime:.2f}",
            "average_response_time": round(avg_response),
        },
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "period_days": days,
    }
