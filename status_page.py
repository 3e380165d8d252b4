"""
MonitHQ - Public Status Page Data
Aggregates an organization's sites and recent incidents for its public page.
"""

from datetime import datetime, timezone

from constants import SITE_STATUS_ONLINE, SITE_STATUS_OFFLINE, SITE_STATUS_DEGRADED
from error_handler import NotFoundError, PermissionDenied


def overall_status(sites: list) -> str:
    statuses = [s.get("status") for s in sites]
    if SITE_STATUS_OFFLINE in statuses:
        return "major_outage"
    if SITE_STATUS_DEGRADED in statuses:
        return "degraded_performance"
    if not all(s == SITE_STATUS_ONLINE for s in statuses):
        return "partial_outage"
    return "operational"


def get_public_status(supabase, slug: str) -> dict:
    """Public status payload for a status page slug."""
    page = supabase.table("status_pages")\
        .select("*, organizations(name, logo)")\
        .eq("slug", slug)\
        .execute()
    if not page.data:
        raise NotFoundError("Status page not found")
    page = page.data[0]
    if not page.get("is_public"):
        raise PermissionDenied("This status page is private")

    org = page.get("organizations") or {}
    sites = supabase.table("sites")\
        .select("id,name,url,status,uptime,average_latency,last_checked_at,region")\
        .eq("organization_id", page["organization_id"])\
        .eq("enabled", True)\
        .order("name")\
        .execute()
    sites = sites.data or []

    incidents = []
    if page.get("show_incidents"):
        result = supabase.table("incidents")\
            .select("*, sites!inner(name, organization_id)")\
            .eq("sites.organization_id", page["organization_id"])\
            .order("start_time", desc=True)\
            .limit(10)\
            .execute()
        incidents = result.data or []

    avg_uptime = sum(s.get("uptime") or 0 for s in sites) / len(sites) if sites else 100

    return {
        "status_page": {
            "title": page.get("title"),
            "description": page.get("description"),
            "logo_url": page.get("logo_url") or org.get("logo"),
            "organization_name": org.get("name"),
            "show_uptime": page.get("show_uptime"),
            "show_incidents": page.get("show_incidents"),
        },
        "overall_status": overall_status(sites),
        "avg_uptime": avg_uptime,
        "sites": sites,
        "incidents": incidents,
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }
