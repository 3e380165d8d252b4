"""
MonitHQ - Core Monitoring Engine
Probes monitored sites, classifies them ONLINE / DEGRADED / OFFLINE, keeps the
rolling uptime and latency aggregates in Supabase, and opens or auto-resolves
incidents on status transitions.
Can run standalone (cron/scheduler) or be called from the API.
"""

import httpx
import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from config import Settings, create_supabase_client
from constants import (
    SITE_STATUS_ONLINE,
    SITE_STATUS_OFFLINE,
    SITE_STATUS_DEGRADED,
    FAILING_STATUSES,
    INCIDENT_INVESTIGATING,
    INCIDENT_RESOLVED,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    PROBE_METHOD,
    PROBE_USER_AGENT,
    UPTIME_WINDOW_DAYS,
    LATENCY_SMOOTHING,
    CHECK_INTERVAL_DEFAULT,
    SSL_CHECK_EVERY_SECONDS,
    SSL_ALERT_THRESHOLD_DAYS,
    WEBHOOK_INCIDENT_CREATED,
    WEBHOOK_INCIDENT_RESOLVED,
    WEBHOOK_SITE_DOWN,
    WEBHOOK_SITE_DEGRADED,
    WEBHOOK_SITE_UP,
)
from notifier import TeamNotifier
from pusher_events import RealtimeBroadcaster
from ssl_checker import check_ssl_certificate, should_send_ssl_alert
from webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


def parse_ts(value) -> Optional[datetime]:
    """Parse a PostgREST timestamp (ISO-8601, possibly 'Z'-suffixed)."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def should_check_site(site: dict, now: Optional[datetime] = None) -> bool:
    """A site is due when it was never checked or its interval has elapsed."""
    last_checked = parse_ts(site.get("last_checked_at"))
    if last_checked is None:
        return True

    now = now or datetime.now(timezone.utc)
    interval = site.get("check_interval") or CHECK_INTERVAL_DEFAULT
    return (now - last_checked).total_seconds() >= interval


def smooth_latency(previous: Optional[float], latency: int) -> int:
    """Exponentially smoothed average latency."""
    if not previous:
        return int(latency)
    return round(previous * LATENCY_SMOOTHING + latency * (1 - LATENCY_SMOOTHING))


def uptime_from_counts(total: int, online: int, new_status: str) -> float:
    """Percentage of ONLINE checks; with no history, 100 or 0 by the latest status."""
    if total > 0:
        uptime = (online / total) * 100
    else:
        uptime = 100.0 if new_status == SITE_STATUS_ONLINE else 0.0
    return min(100.0, max(0.0, uptime))


class MonitorEngine:
    """Core monitoring engine that checks sites and manages incidents."""

    def __init__(self, supabase_client, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 broadcaster: Optional[RealtimeBroadcaster] = None,
                 notifier: Optional[TeamNotifier] = None,
                 webhooks: Optional[WebhookDispatcher] = None):
        self.supabase = supabase_client
        self.settings = settings or Settings()
        self.transport = transport
        self.broadcaster = broadcaster or RealtimeBroadcaster(self.settings)
        self.notifier = notifier or TeamNotifier(supabase_client, self.settings)
        self.webhooks = webhooks or WebhookDispatcher(supabase_client)

    # ─── Probing ─────────────────────────────────────────────────────────────

    async def check_site(self, url: str, timeout: Optional[float] = None) -> dict:
        """HEAD a URL and classify the outcome."""
        timeout = timeout or self.settings.probe_timeout_seconds
        result = {
            "status": SITE_STATUS_ONLINE,
            "latency": 0,
            "status_code": None,
            "error": None,
        }

        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=timeout,
                transport=self.transport,
                headers={"User-Agent": PROBE_USER_AGENT},
            ) as client:
                response = await client.request(PROBE_METHOD, url)

            latency = int((loop.time() - start) * 1000)
            result["latency"] = latency
            result["status_code"] = response.status_code

            if not response.is_success:
                result["status"] = SITE_STATUS_OFFLINE
                result["error"] = f"HTTP {response.status_code} {response.reason_phrase}".rstrip()
            elif latency > self.settings.degraded_latency_ms:
                result["status"] = SITE_STATUS_DEGRADED

        except httpx.TimeoutException:
            result["status"] = SITE_STATUS_OFFLINE
            result["error"] = f"Timeout after {timeout}s"
        except httpx.ConnectError as e:
            result["status"] = SITE_STATUS_OFFLINE
            result["error"] = f"Connection failed: {str(e)[:200]}"
        except httpx.TooManyRedirects:
            result["status"] = SITE_STATUS_OFFLINE
            result["error"] = "Too many redirects"
        except httpx.HTTPError as e:
            result["status"] = SITE_STATUS_OFFLINE
            result["error"] = f"Error: {str(e)[:200] or type(e).__name__}"

        if result["error"]:
            result["latency"] = int((loop.time() - start) * 1000)
            logger.warning(f"Error checking {url}: {result['error']}")

        return result

    def run_check(self, url: str, timeout: Optional[float] = None) -> dict:
        """Synchronous wrapper for check_site."""
        return asyncio.run(self.check_site(url, timeout))

    # ─── Aggregates ──────────────────────────────────────────────────────────

    def compute_uptime(self, site_id: str, new_status: str, now: Optional[datetime] = None) -> float:
        """Uptime over the trailing window from site_checks counts."""
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=UPTIME_WINDOW_DAYS)).isoformat()

        total = self.supabase.table("site_checks")\
            .select("id", count="exact")\
            .eq("site_id", site_id)\
            .gte("checked_at", since)\
            .execute()

        online = self.supabase.table("site_checks")\
            .select("id", count="exact")\
            .eq("site_id", site_id)\
            .eq("status", SITE_STATUS_ONLINE)\
            .gte("checked_at", since)\
            .execute()

        return uptime_from_counts(total.count or 0, online.count or 0, new_status)

    # ─── Status transitions ──────────────────────────────────────────────────

    def save_check_result(self, site_id: str, result: dict, checked_at: str):
        """Record one probe in site_checks."""
        self.supabase.table("site_checks").insert({
            "site_id": site_id,
            "status": result["status"],
            "response_time": result["latency"],
            "status_code": result.get("status_code"),
            "error_message": result.get("error"),
            "checked_at": checked_at,
        }).execute()

    def update_site_status(self, site: dict, result: dict, source: str = "cron",
                           now: Optional[datetime] = None) -> dict:
        """
        Persist a probe result and drive the incident state machine.

        Returns the updated site row.
        """
        now = now or datetime.now(timezone.utc)
        now_iso = now.isoformat()
        previous_status = site.get("status")
        new_status = result["status"]

        # Uptime reflects the history before this check
        uptime = self.compute_uptime(site["id"], new_status, now)

        updated = self.supabase.table("sites").update({
            "status": new_status,
            "uptime": round(uptime, 2),
            "average_latency": smooth_latency(site.get("average_latency"), result["latency"]),
            "last_checked_at": now_iso,
            "updated_at": now_iso,
        }).eq("id", site["id"]).execute()
        updated_site = (updated.data or [None])[0] or {**site, "status": new_status}

        self.save_check_result(site["id"], result, now_iso)

        org_id = site["organization_id"]

        if new_status in FAILING_STATUSES and previous_status == SITE_STATUS_ONLINE:
            self._open_incident(site, result, source, now_iso)

        if new_status == SITE_STATUS_ONLINE and previous_status in FAILING_STATUSES:
            self._resolve_open_incidents(site, now)
            self.webhooks.trigger(org_id, WEBHOOK_SITE_UP, {"site": updated_site})

        if previous_status != new_status:
            self.broadcaster.site_status_changed(updated_site, org_id)

        return updated_site

    def _open_incident(self, site: dict, result: dict, source: str, now_iso: str) -> dict:
        status = result["status"]
        prefix = "Manual check detected" if source == "manual" else "Automated detection"
        summary = f"{prefix}: {site['name']} is {status.lower()}. Response time: {result['latency']}ms."
        if result.get("error"):
            summary += f" Error: {result['error']}"

        created = self.supabase.table("incidents").insert({
            "site_id": site["id"],
            "status": INCIDENT_INVESTIGATING,
            "severity": SEVERITY_HIGH if status == SITE_STATUS_OFFLINE else SEVERITY_MEDIUM,
            "start_time": now_iso,
            "ai_summary": summary,
        }).execute()
        incident = created.data[0]
        org_id = site["organization_id"]

        logger.info(f"Opened {incident['severity']} incident for {site['name']}")

        self.broadcaster.incident_created(incident, org_id)
        self.webhooks.trigger(org_id, WEBHOOK_INCIDENT_CREATED, {"incident": incident, "site": site})
        self.webhooks.trigger(
            org_id,
            WEBHOOK_SITE_DOWN if status == SITE_STATUS_OFFLINE else WEBHOOK_SITE_DEGRADED,
            {"site": site, "error": result.get("error")},
        )

        if source != "manual" or self._notify_on_manual_check():
            self.notifier.notify_incident(incident, site)

        return incident

    def _resolve_open_incidents(self, site: dict, now: datetime) -> list:
        open_incidents = self.supabase.table("incidents")\
            .select("*")\
            .eq("site_id", site["id"])\
            .neq("status", INCIDENT_RESOLVED)\
            .is_("end_time", "null")\
            .execute()

        resolved = []
        for incident in (open_incidents.data or []):
            started = parse_ts(incident["start_time"])
            duration = int((now - started).total_seconds() * 1000)

            if incident.get("ai_summary"):
                summary = f"{incident['ai_summary']} - Auto-resolved: Site back online."
            else:
                summary = f"Auto-resolved: Site back online after {round(duration / 60000)} minutes."

            updated = self.supabase.table("incidents").update({
                "status": INCIDENT_RESOLVED,
                "end_time": now.isoformat(),
                "duration": duration,
                "ai_summary": summary,
            }).eq("id", incident["id"]).execute()
            resolved_incident = (updated.data or [None])[0] or {
                **incident,
                "status": INCIDENT_RESOLVED,
                "end_time": now.isoformat(),
                "duration": duration,
                "ai_summary": summary,
            }

            logger.info(f"Auto-resolved incident {incident['id']} for {site['name']}")

            org_id = site["organization_id"]
            self.broadcaster.incident_resolved(resolved_incident, org_id)
            self.webhooks.trigger(org_id, WEBHOOK_INCIDENT_RESOLVED, {"incident": resolved_incident, "site": site})
            self.notifier.notify_resolution(resolved_incident, site)
            resolved.append(resolved_incident)

        return resolved

    def _notify_on_manual_check(self) -> bool:
        result = self.supabase.table("app_settings")\
            .select("notify_on_manual_check")\
            .eq("id", "app_settings")\
            .execute()
        return bool(result.data and result.data[0].get("notify_on_manual_check"))

    # ─── SSL ─────────────────────────────────────────────────────────────────

    def ssl_check_due(self, site: dict, now: Optional[datetime] = None) -> bool:
        if not self.settings.ssl_checks_enabled:
            return False
        if not site.get("ssl_monitoring_enabled") or not str(site.get("url", "")).startswith("https://"):
            return False
        last = parse_ts(site.get("ssl_last_checked"))
        if last is None:
            return True
        now = now or datetime.now(timezone.utc)
        return (now - last).total_seconds() >= SSL_CHECK_EVERY_SECONDS

    def run_ssl_check(self, site: dict, now: Optional[datetime] = None) -> dict:
        """Check a site's certificate, store the result, alert when due."""
        now = now or datetime.now(timezone.utc)
        ssl_info = asyncio.run(check_ssl_certificate(site["url"], self.settings.probe_timeout_seconds))

        if not ssl_info.get("is_https"):
            return ssl_info

        update = {"ssl_last_checked": now.isoformat()}
        # Expired and unverified certificates still carry dates worth keeping
        if ssl_info.get("days_remaining") is not None:
            update.update({
                "ssl_certificate_valid": bool(ssl_info.get("valid")),
                "ssl_issuer": ssl_info.get("issuer"),
                "ssl_valid_from": ssl_info.get("valid_from"),
                "ssl_expiry_date": ssl_info.get("valid_to"),
                "ssl_days_remaining": ssl_info.get("days_remaining"),
            })

            if site.get("ssl_monitoring_enabled") and should_send_ssl_alert(
                ssl_info["days_remaining"],
                site.get("ssl_alert_threshold") or SSL_ALERT_THRESHOLD_DAYS,
                parse_ts(site.get("ssl_last_alert_at")),
                now,
            ):
                if self.notifier.send_ssl_expiry_notification(site, ssl_info):
                    update["ssl_last_alert_at"] = now.isoformat()
        else:
            update.update({
                "ssl_certificate_valid": False,
                "ssl_issuer": None,
                "ssl_valid_from": None,
                "ssl_expiry_date": None,
                "ssl_days_remaining": None,
            })

        self.supabase.table("sites").update(update).eq("id", site["id"]).execute()

        self.supabase.table("ssl_checks").insert({
            "site_id": site["id"],
            "organization_id": site["organization_id"],
            "valid": bool(ssl_info.get("valid")),
            "issuer": ssl_info.get("issuer"),
            "subject": ssl_info.get("subject"),
            "valid_from": ssl_info.get("valid_from"),
            "valid_to": ssl_info.get("valid_to"),
            "days_remaining": ssl_info.get("days_remaining"),
            "serial_number": ssl_info.get("serial_number"),
            "fingerprint": ssl_info.get("fingerprint"),
            "authorized": ssl_info.get("authorized"),
            "error_message": ssl_info.get("error"),
            "checked_at": now.isoformat(),
        }).execute()

        return ssl_info

    # ─── Cycles ──────────────────────────────────────────────────────────────

    def run_all_checks(self, now: Optional[datetime] = None) -> dict:
        """Check every enabled site that is due. One site failing never stops the loop."""
        now = now or datetime.now(timezone.utc)
        sites = self.supabase.table("sites")\
            .select("*")\
            .eq("enabled", True)\
            .execute()
        sites = sites.data or []
        logger.info(f"[Cron] Found {len(sites)} enabled sites")

        due = [s for s in sites if should_check_site(s, now)]
        logger.info(f"[Cron] Checking {len(due)} sites ({len(sites) - len(due)} skipped based on interval)")

        results = []
        for site in due:
            try:
                result = self.run_check(site["url"])
                self.update_site_status(site, result)
                results.append({
                    "site": site["name"],
                    "status": result["status"],
                    "latency": result["latency"],
                    "interval": site.get("check_interval"),
                    "error": result["error"],
                })
                logger.info(
                    f"[Cron] {site['name']}: {result['status']} ({result['latency']}ms) "
                    f"[interval: {site.get('check_interval')}s]"
                    + (f" - {result['error']}" if result["error"] else "")
                )
            except Exception as e:
                logger.exception(f"[Cron] Error updating {site.get('name')}")
                results.append({"site": site.get("name"), "error": str(e)})
                continue

            if self.ssl_check_due(site, now):
                try:
                    self.run_ssl_check(site, now)
                except Exception as e:
                    logger.error(f"[Cron] SSL check failed for {site['name']}: {e}")

        logger.info("[Cron] Health checks complete")

        return {
            "success": True,
            "total_sites": len(sites),
            "checked": len(due),
            "skipped": len(sites) - len(due),
            "results": results,
        }

    def check_site_now(self, site: dict) -> dict:
        """Manually check one site, outside of its schedule."""
        now = datetime.now(timezone.utc)
        previous_status = site.get("status")
        result = self.run_check(site["url"])
        updated_site = self.update_site_status(site, result, source="manual", now=now)

        return {
            "site": updated_site,
            "check": {
                "status": result["status"],
                "latency": result["latency"],
                "timestamp": now.isoformat(),
                "status_changed": previous_status != result["status"],
                "previous_status": previous_status,
                "error": result["error"],
            },
        }


def run_monitoring_cycle(settings: Optional[Settings] = None) -> dict:
    """Run a single monitoring cycle. Called by cron/scheduler."""
    settings = settings or Settings()
    client = create_supabase_client(settings)
    engine = MonitorEngine(client, settings)
    summary = engine.run_all_checks()

    logger.info(f"Checked {summary['checked']} of {summary['total_sites']} sites")
    for r in summary["results"]:
        status = r.get("status", "ERROR")
        logger.info(f"  {r['site']}: {status} ({r.get('latency', 'N/A')}ms)")

    return summary
