"""
MonitHQ - REST API
JSON routes for sites, DNS and performance checks, incidents, webhooks,
exports, the public status page and the monitoring cron trigger.

Usage:
    uvicorn api:build_default_app --factory --port 8000
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

import dns_checker
import incidents as incident_service
import performance_checker
import sites as site_service
import webhooks as webhook_service
from config import Settings, create_supabase_client, setup_logging
from constants import WEBHOOK_SITE_CREATED, WEBHOOK_SITE_DELETED
from error_handler import AuthError, ErrorHandler, MonitHQError
from monitor_engine import MonitorEngine
from ssl_checker import format_ssl_info
from status_page import get_public_status

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    s = (token or "").strip()
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _bearer_token(request: Request) -> str:
    raw = request.headers.get("authorization") or ""
    parts = raw.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


# ─── Dependencies ────────────────────────────────────────────────────────────

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_supabase(request: Request):
    return request.app.state.supabase


def get_engine(request: Request) -> MonitorEngine:
    return request.app.state.engine


def get_current_user(request: Request, supabase=Depends(get_supabase)) -> dict:
    """Resolve the caller from an API key sent as a bearer token."""
    token = _bearer_token(request)
    if not token:
        raise AuthError("Unauthorized")

    key = supabase.table("api_keys")\
        .select("user_id")\
        .eq("key_hash", hash_token(token))\
        .eq("is_active", True)\
        .execute()
    if not key.data:
        raise AuthError("Invalid API key")

    user = supabase.table("users")\
        .select("id, email, role, organization_id, email_verified")\
        .eq("id", key.data[0]["user_id"])\
        .execute()
    if not user.data:
        raise AuthError("Invalid API key")
    return user.data[0]


def verify_cron_secret(request: Request, settings: Settings = Depends(get_settings)):
    """With CRON_SECRET set, callers must send it as a bearer token."""
    if not settings.cron_secret:
        return
    if not hmac.compare_digest(_bearer_token(request), settings.cron_secret):
        raise AuthError("Unauthorized")


# ─── App ─────────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, supabase=None,
               engine: Optional[MonitorEngine] = None) -> FastAPI:
    settings = settings or Settings()
    supabase = supabase if supabase is not None else create_supabase_client(settings)

    app = FastAPI(title="MonitHQ API")
    app.state.settings = settings
    app.state.supabase = supabase
    app.state.engine = engine or MonitorEngine(supabase, settings)
    app.state.errors = ErrorHandler("MonitHQ", supabase)

    @app.exception_handler(MonitHQError)
    async def _monithq_error(request: Request, exc: MonitHQError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        body = request.app.state.errors.handle(
            exc, category="SYS", context={"path": request.url.path, "method": request.method}
        )
        return JSONResponse(body, status_code=500)

    # ─── Cron ────────────────────────────────────────────────────────────────

    @app.post("/api/cron/monitor", dependencies=[Depends(verify_cron_secret)])
    def cron_monitor(engine: MonitorEngine = Depends(get_engine)):
        return engine.run_all_checks()

    @app.get("/api/cron/monitor")
    def cron_monitor_manual(request: Request, settings: Settings = Depends(get_settings),
                            engine: MonitorEngine = Depends(get_engine)):
        if not settings.is_development:
            return JSONResponse({"error": "Method not allowed"}, status_code=405)
        verify_cron_secret(request, settings)
        return engine.run_all_checks()

    # ─── Sites ───────────────────────────────────────────────────────────────

    @app.get("/api/sites")
    def list_sites(page: int = 1, limit: int = 50, status: Optional[str] = None,
                   search: Optional[str] = None,
                   sort_by: str = Query("created_at", alias="sortBy"),
                   sort_order: str = Query("desc", alias="sortOrder"),
                   user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return site_service.list_sites(supabase, user, page, limit, status, search, sort_by, sort_order)

    @app.post("/api/sites", status_code=201)
    def create_site(body: dict = Body(...), user: dict = Depends(get_current_user),
                    supabase=Depends(get_supabase), engine: MonitorEngine = Depends(get_engine)):
        site = site_service.create_site(supabase, user, body)
        engine.webhooks.trigger(site["organization_id"], WEBHOOK_SITE_CREATED, {"site": site})
        return {"site": site}

    @app.get("/api/sites/{site_id}")
    def get_site(site_id: str, user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        site = site_service.get_site(supabase, user, site_id)
        site["uptime_30d"] = site_service.get_uptime_percentage(supabase, site_id)
        return {"site": site}

    @app.patch("/api/sites/{site_id}")
    def update_site(site_id: str, body: dict = Body(...),
                    user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return {"site": site_service.update_site(supabase, user, site_id, body)}

    @app.delete("/api/sites/{site_id}")
    def delete_site(site_id: str, user: dict = Depends(get_current_user),
                    supabase=Depends(get_supabase), engine: MonitorEngine = Depends(get_engine)):
        site = site_service.delete_site(supabase, user, site_id)
        engine.webhooks.trigger(site["organization_id"], WEBHOOK_SITE_DELETED, {"site": site})
        return {"success": True}

    @app.post("/api/sites/{site_id}/check")
    def check_site(site_id: str, user: dict = Depends(get_current_user),
                   supabase=Depends(get_supabase), engine: MonitorEngine = Depends(get_engine)):
        site = site_service.get_site(supabase, user, site_id)
        return {"success": True, **engine.check_site_now(site)}

    @app.post("/api/sites/{site_id}/ssl/check")
    def check_ssl(site_id: str, user: dict = Depends(get_current_user),
                  supabase=Depends(get_supabase), engine: MonitorEngine = Depends(get_engine)):
        site = site_service.get_site(supabase, user, site_id)
        ssl_info = engine.run_ssl_check(site)
        if not ssl_info.get("is_https"):
            return {"success": True, "message": "Site is not using HTTPS", "is_https": False, "ssl_info": None}
        return {"success": True, "is_https": True, "ssl_info": {**ssl_info, "formatted": format_ssl_info(ssl_info)}}

    @app.get("/api/sites/{site_id}/uptime-trend")
    def uptime_trend(site_id: str, days: int = Query(7, ge=1, le=90),
                     user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        site_service.get_site(supabase, user, site_id)
        return {"site_id": site_id, "days": days, "trend": site_service.get_uptime_trend(supabase, site_id, days)}

    @app.get("/api/sites/{site_id}/dns")
    def dns_history(site_id: str, limit: int = Query(10, ge=1, le=100),
                    include_unchanged: bool = Query(False, alias="includeUnchanged"),
                    user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        site_service.get_site(supabase, user, site_id)
        return {"success": True, **dns_checker.list_dns_checks(supabase, site_id, limit, include_unchanged)}

    @app.post("/api/sites/{site_id}/dns")
    def dns_check(site_id: str, user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        site = site_service.get_site(supabase, user, site_id)
        return {"success": True, **dns_checker.run_dns_check(supabase, site)}

    @app.get("/api/sites/{site_id}/performance")
    def performance_history(site_id: str, limit: int = Query(10, ge=1, le=100),
                            user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        site_service.get_site(supabase, user, site_id)
        return {"success": True, **performance_checker.list_performance_checks(supabase, site_id, limit)}

    @app.post("/api/sites/{site_id}/performance")
    def performance_check(site_id: str, user: dict = Depends(get_current_user),
                          supabase=Depends(get_supabase), engine: MonitorEngine = Depends(get_engine)):
        site = site_service.get_site(supabase, user, site_id)
        return {"success": True, **performance_checker.run_performance_check(supabase, site, transport=engine.transport)}

    # ─── Incidents ───────────────────────────────────────────────────────────

    @app.get("/api/incidents")
    def list_incidents(status: Optional[str] = None, site_id: Optional[str] = Query(None, alias="siteId"),
                       limit: int = Query(50, ge=1, le=100),
                       user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return {"incidents": incident_service.list_incidents(supabase, user, status, site_id, limit)}

    @app.get("/api/incidents/{incident_id}")
    def get_incident(incident_id: str, user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return {"incident": incident_service.get_incident(supabase, user, incident_id)}

    @app.patch("/api/incidents/{incident_id}")
    def update_incident(incident_id: str, body: dict = Body(...),
                        user: dict = Depends(get_current_user), supabase=Depends(get_supabase),
                        engine: MonitorEngine = Depends(get_engine)):
        incident = incident_service.update_incident(
            supabase, user, incident_id, body,
            broadcaster=engine.broadcaster, webhooks=engine.webhooks,
        )
        return {"incident": incident}

    # ─── Webhooks ────────────────────────────────────────────────────────────

    @app.get("/api/webhooks")
    def list_webhooks(user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return {"webhooks": webhook_service.list_webhooks(supabase, user)}

    @app.post("/api/webhooks", status_code=201)
    def create_webhook(body: dict = Body(...), user: dict = Depends(get_current_user),
                       supabase=Depends(get_supabase)):
        return webhook_service.create_webhook(supabase, user, body)

    @app.patch("/api/webhooks/{webhook_id}")
    def update_webhook(webhook_id: str, body: dict = Body(...),
                       user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        return {"webhook": webhook_service.update_webhook(supabase, user, webhook_id, body)}

    @app.delete("/api/webhooks/{webhook_id}")
    def delete_webhook(webhook_id: str, user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        webhook_service.delete_webhook(supabase, user, webhook_id)
        return {"message": "Webhook deleted successfully"}

    # ─── Export / public ─────────────────────────────────────────────────────

    @app.get("/api/export/uptime")
    def export_uptime(format: str = "json", site_id: Optional[str] = Query(None, alias="siteId"),
                      days: int = Query(30, ge=1, le=365),
                      user: dict = Depends(get_current_user), supabase=Depends(get_supabase)):
        data = site_service.export_uptime(supabase, user, site_id, days, format)
        if format == "csv":
            stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
            return Response(
                content=data,
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="uptime-report-{stamp}.csv"'},
            )
        return data

    @app.get("/api/status/{slug}")
    def public_status(slug: str, supabase=Depends(get_supabase)):
        return get_public_status(supabase, slug)

    return app


def build_default_app() -> FastAPI:
    load_dotenv()
    settings = Settings()
    setup_logging(settings)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(build_default_app(), host="0.0.0.0", port=8000)
