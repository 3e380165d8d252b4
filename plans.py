"""
MonitHQ - Plan Limits
Reads subscription plans from Supabase with a short-lived cache.
"""

import json
import time
import logging
from typing import Optional

from constants import FREE_PLAN_LIMITS

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 60

_plans_cache = None
_plans_cache_time = 0.0


def get_plans(supabase) -> list:
    """Active plans ordered by sort_order, cached for a minute."""
    global _plans_cache, _plans_cache_time

    now = time.monotonic()
    if _plans_cache is not None and (now - _plans_cache_time) < CACHE_TTL_SECONDS:
        return _plans_cache

    result = supabase.table("plans")\
        .select("*")\
        .eq("is_active", True)\
        .order("sort_order")\
        .execute()

    _plans_cache = result.data or []
    _plans_cache_time = now
    return _plans_cache


def clear_plans_cache():
    """Drop cached plans (call after plans are edited)."""
    global _plans_cache, _plans_cache_time
    _plans_cache = None
    _plans_cache_time = 0.0


def get_plan(supabase, plan_name: Optional[str]) -> Optional[dict]:
    """Plan by name, falling back to FREE."""
    plans = get_plans(supabase)
    name = (plan_name or "FREE").upper()
    for plan in plans:
        if plan["name"] == name:
            return plan
    for plan in plans:
        if plan["name"] == "FREE":
            return plan
    return None


def _parse_features(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed plan features: {raw!r}")
        return {}


def get_plan_limits(supabase, plan_name: Optional[str]) -> dict:
    """
    Limits for a plan.

    Returns dict with sites (-1 for unlimited), min_check_interval,
    max_team_members, allowed_channels and features.
    """
    plan = get_plan(supabase, plan_name)
    if plan is None:
        return {**FREE_PLAN_LIMITS, "allowed_channels": list(FREE_PLAN_LIMITS["allowed_channels"])}

    return {
        "sites": plan.get("max_sites", FREE_PLAN_LIMITS["sites"]),
        "min_check_interval": plan.get("min_check_interval", FREE_PLAN_LIMITS["min_check_interval"]),
        "max_team_members": plan.get("max_team_members", FREE_PLAN_LIMITS["max_team_members"]),
        "allowed_channels": plan.get("allowed_channels") or ["email"],
        "features": _parse_features(plan.get("features")),
    }


def get_organization_plan_name(supabase, organization_id: str) -> str:
    """Plan name of an organization's subscription, FREE when it has none."""
    result = supabase.table("subscriptions")\
        .select("plan")\
        .eq("organization_id", organization_id)\
        .limit(1)\
        .execute()
    if result.data:
        return result.data[0].get("plan") or "FREE"
    return "FREE"
