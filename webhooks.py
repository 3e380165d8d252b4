"""
MonitHQ - Organization Webhooks
Registers organization webhooks and delivers signed JSON events to them.
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

import httpx

from constants import ROLE_SUPER_ADMIN, WEBHOOK_EVENTS
from error_handler import NotFoundError, PermissionDenied, ValidationError
from sites import is_valid_url

logger = logging.getLogger(__name__)

WEBHOOK_USER_AGENT = "MonitHQ-Webhook/1.0"
WEBHOOK_TIMEOUT_SECONDS = 10


def sign_payload(secret: str, body: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature or "")


class WebhookDispatcher:
    """Sends events to every active webhook of an organization that listens for them."""

    def __init__(self, supabase_client, http_client: Optional[httpx.Client] = None):
        self.supabase = supabase_client
        self.http = http_client or httpx.Client(timeout=WEBHOOK_TIMEOUT_SECONDS)

    def trigger(self, organization_id: str, event: str, payload: dict) -> int:
        """Deliver an event. Returns the number of successful deliveries."""
        if event not in WEBHOOK_EVENTS:
            logger.warning(f"Ignoring unknown webhook event {event}")
            return 0
        try:
            webhooks = self.supabase.table("webhooks")\
                .select("*")\
                .eq("organization_id", organization_id)\
                .eq("is_active", True)\
                .contains("events", [event])\
                .execute()
        except Exception as e:
            logger.error(f"Error loading webhooks for org {organization_id}: {e}")
            return 0

        delivered = 0
        for webhook in (webhooks.data or []):
            if self._send(webhook, event, payload):
                delivered += 1
        return delivered

    def _send(self, webhook: dict, event: str, payload: dict) -> bool:
        body = json.dumps({
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": payload,
        }, default=str)

        headers = {
            "Content-Type": "application/json",
            "User-Agent": WEBHOOK_USER_AGENT,
            "X-MonitHQ-Event": event,
        }
        if webhook.get("secret"):
            headers["X-MonitHQ-Signature"] = sign_payload(webhook["secret"], body)

        try:
            response = self.http.post(webhook["url"], content=body, headers=headers)

            self.supabase.table("webhooks").update({
                "last_triggered_at": datetime.now(timezone.utc).isoformat()
            }).eq("id", webhook["id"]).execute()

            if response.status_code >= 400:
                logger.error(f"Webhook {webhook['id']} failed with status {response.status_code}")
                return False
            return True
        except Exception as e:
            logger.error(f"Error sending webhook {webhook.get('id')}: {str(e)[:200]}")
            return False


# ─── Registration ────────────────────────────────────────────────────────────

def _validate_events(events) -> list:
    if not isinstance(events, list) or not events:
        raise ValidationError("Name, URL, and events are required")
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown:
        raise ValidationError(f"Unknown webhook events: {', '.join(map(str, unknown))}",
                              allowed=list(WEBHOOK_EVENTS))
    return events


def _validate_url(url: str) -> str:
    if not is_valid_url(url):
        raise ValidationError("Invalid URL format")
    return url


def list_webhooks(supabase, user: dict) -> list:
    result = supabase.table("webhooks")\
        .select("id, name, url, events, is_active, last_triggered_at, created_at")\
        .eq("organization_id", user["organization_id"])\
        .order("created_at", desc=True)\
        .execute()
    return result.data or []


def create_webhook(supabase, user: dict, body: dict) -> dict:
    """
    Register a webhook for the user's organization.

    With use_secret, a random secret is generated and returned once; deliveries
    are then signed with it.
    """
    name = (body.get("name") or "").strip()
    url = (body.get("url") or "").strip()
    if not name or not url:
        raise ValidationError("Name, URL, and events are required")
    events = _validate_events(body.get("events"))
    _validate_url(url)

    secret = secrets.token_hex(32) if body.get("use_secret") else None
    result = supabase.table("webhooks").insert({
        "name": name,
        "url": url,
        "events": events,
        "secret": secret,
        "is_active": True,
        "organization_id": user["organization_id"],
    }).execute()
    webhook = result.data[0]
    webhook.pop("secret", None)
    logger.info(f"Registered webhook {webhook.get('id')} for org {user['organization_id']}")
    return {"webhook": webhook, "secret": secret}


def _get_webhook(supabase, user: dict, webhook_id: str) -> dict:
    result = supabase.table("webhooks").select("*").eq("id", webhook_id).execute()
    if not result.data:
        raise NotFoundError("Webhook not found")
    webhook = result.data[0]
    if user.get("role") != ROLE_SUPER_ADMIN and webhook.get("organization_id") != user.get("organization_id"):
        raise PermissionDenied("You do not have permission to change this webhook")
    return webhook


def update_webhook(supabase, user: dict, webhook_id: str, body: dict) -> dict:
    webhook = _get_webhook(supabase, user, webhook_id)

    update = {}
    if body.get("name"):
        update["name"] = body["name"]
    if body.get("url"):
        update["url"] = _validate_url(body["url"])
    if body.get("events") is not None:
        update["events"] = _validate_events(body["events"])
    if isinstance(body.get("is_active"), bool):
        update["is_active"] = body["is_active"]
    if not update:
        raise ValidationError("No updatable fields provided")

    result = supabase.table("webhooks").update(update).eq("id", webhook_id).execute()
    updated = (result.data or [{**webhook, **update}])[0]
    updated.pop("secret", None)
    return updated


def delete_webhook(supabase, user: dict, webhook_id: str):
    _get_webhook(supabase, user, webhook_id)
    supabase.table("webhooks").delete().eq("id", webhook_id).execute()
    logger.info(f"Deleted webhook {webhook_id}")
