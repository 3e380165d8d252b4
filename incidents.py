"""
MonitHQ - Incident Management
Listing incidents and moving them through their lifecycle by hand.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from constants import (
    INCIDENT_STATUSES,
    INCIDENT_RESOLVED,
    ROLE_SUPER_ADMIN,
    WEBHOOK_INCIDENT_UPDATED,
    WEBHOOK_INCIDENT_RESOLVED,
)
from error_handler import ValidationError, NotFoundError, PermissionDenied
from monitor_engine import parse_ts

logger = logging.getLogger(__name__)

INCIDENT_SELECT = "*, sites(id, name, url, organization_id)"


def _site_of(incident: dict) -> dict:
    return incident.get("sites") or {}


def list_incidents(supabase, user: dict, status: Optional[str] = None,
                   site_id: Optional[str] = None, limit: int = 50) -> list:
    """Most recent incidents of the user's organization."""
    query = supabase.table("incidents").select("*, sites!inner(id, name, url, organization_id)")
    if user.get("role") != ROLE_SUPER_ADMIN:
        query = query.eq("sites.organization_id", user["organization_id"])
    if status:
        status = status.upper()
        if status not in INCIDENT_STATUSES:
            raise ValidationError(f"Unknown incident status {status}")
        query = query.eq("status", status)
    if site_id:
        query = query.eq("site_id", site_id)

    result = query.order("start_time", desc=True).limit(min(int(limit), 100)).execute()
    return result.data or []


def get_incident(supabase, user: dict, incident_id: str) -> dict:
    result = supabase.table("incidents").select(INCIDENT_SELECT).eq("id", incident_id).execute()
    if not result.data:
        raise NotFoundError("Incident not found")
    incident = result.data[0]
    if user.get("role") != ROLE_SUPER_ADMIN and \
            _site_of(incident).get("organization_id") != user.get("organization_id"):
        raise PermissionDenied("Forbidden")
    return incident


def update_incident(supabase, user: dict, incident_id: str, body: dict,
                    broadcaster=None, webhooks=None) -> dict:
    """
    Change an incident's status (and optionally its summary).

    Resolving an incident that has no end time stamps end_time, duration
    (milliseconds) and who resolved it.
    """
    status = (body.get("status") or "").upper()
    if status not in INCIDENT_STATUSES:
        raise ValidationError("Invalid incident status", allowed=list(INCIDENT_STATUSES))

    existing = get_incident(supabase, user, incident_id)
    site = _site_of(existing)

    update = {"status": status}
    if body.get("ai_summary"):
        update["ai_summary"] = body["ai_summary"]

    if status == INCIDENT_RESOLVED and not existing.get("end_time"):
        end_time = datetime.now(timezone.utc)
        update["end_time"] = end_time.isoformat()
        update["duration"] = int((end_time - parse_ts(existing["start_time"])).total_seconds() * 1000)
        update["resolved_by_id"] = user["id"]

    result = supabase.table("incidents").update(update).eq("id", incident_id).execute()
    incident = (result.data or [{**existing, **update}])[0]

    org_id = site.get("organization_id")
    if org_id:
        resolved = status == INCIDENT_RESOLVED
        if broadcaster is not None:
            if resolved:
                broadcaster.incident_resolved(incident, org_id)
            else:
                broadcaster.incident_updated(incident, org_id)
        if webhooks is not None:
            webhooks.trigger(
                org_id,
                WEBHOOK_INCIDENT_RESOLVED if resolved else WEBHOOK_INCIDENT_UPDATED,
                {"incident": incident, "site": site},
            )

    logger.info(f"Incident {incident_id} set to {status} by {user['id']}")
    return incident
