"""
MonitHQ - Team Notifications
Emails, Slack messages and custom webhook calls for incidents, recoveries and
SSL expiry, filtered by each member's preferences and the organization plan.
"""

import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from constants import ROLE_USER, ROLE_ORG_ADMIN, ROLE_SUPER_ADMIN, SEVERITY_MEDIUM
from plans import get_organization_plan_name, get_plan_limits

logger = logging.getLogger(__name__)

MEMBER_FIELDS = (
    "id, email, role, notify_on_incident, notify_on_degradation, notify_on_resolution, "
    "notify_only_admins, notify_via_email, notify_via_slack, notify_via_sms, notify_via_webhook, "
    "slack_webhook_url, sms_phone_number, custom_webhook_url"
)

EMAIL_TEMPLATE = """
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; padding: 20px;">
    <div style="max-width: 600px; margin: 0 auto;">
        <h2 style="color: {color};">{heading}</h2>
        <p><strong>URL:</strong> <a href="{url}">{url}</a></p>
        {rows}
        <p><strong>Time:</strong> {time}</p>
        <hr style="border: 1px solid #E5E7EB;">
        <p style="color: #6B7280; font-size: 12px;">MonitHQ Uptime Monitoring</p>
    </div>
</body>
</html>"""


def _now_text() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def _minutes(duration_ms) -> int:
    return round((duration_ms or 0) / 60000)


class TeamNotifier:
    """Fans incident events out to an organization's members."""

    def __init__(self, supabase_client, settings, http_client: Optional[httpx.Client] = None):
        self.supabase = supabase_client
        self.settings = settings
        self.http = http_client or httpx.Client(timeout=10)

    # ─── Recipients ──────────────────────────────────────────────────────────

    def _load_members(self, organization_id: str) -> list:
        result = self.supabase.table("users")\
            .select(MEMBER_FIELDS)\
            .eq("organization_id", organization_id)\
            .execute()
        return result.data or []

    def _subscribed_site_ids(self, user_id: str) -> set:
        result = self.supabase.table("site_subscriptions")\
            .select("site_id")\
            .eq("user_id", user_id)\
            .execute()
        return {row["site_id"] for row in (result.data or [])}

    def _should_notify(self, member: dict, site: dict, event: str, severity: Optional[str] = None) -> bool:
        email = member.get("email")
        if event == "incident":
            if not member.get("notify_on_incident"):
                logger.info(f"Skipping {email}: incident notifications disabled")
                return False
            if severity == SEVERITY_MEDIUM and not member.get("notify_on_degradation"):
                logger.info(f"Skipping {email}: degradation notifications disabled")
                return False
        elif event == "resolution" and not member.get("notify_on_resolution"):
            logger.info(f"Skipping {email}: resolution notifications disabled")
            return False

        if member.get("notify_only_admins") and member.get("role") == ROLE_USER:
            logger.info(f"Skipping {email}: only admins should receive notifications")
            return False

        # Members with explicit site subscriptions only hear about those sites
        subscribed = self._subscribed_site_ids(member["id"])
        if subscribed and site["id"] not in subscribed:
            logger.info(f"Skipping {email}: not subscribed to this site")
            return False

        return True

    # ─── Public API ──────────────────────────────────────────────────────────

    def notify_incident(self, incident: dict, site: dict) -> dict:
        """Tell the team a site went down or degraded."""
        slack_text = (
            f"🚨 Incident: {site['name']} is {incident['status']}\n"
            f"Severity: {incident['severity']}\n"
            + (f"Summary: {incident['ai_summary']}\n" if incident.get("ai_summary") else "")
            + f"Started: {incident['start_time']}\n"
            f"URL: {site['url']}"
        )
        subject = f"🔴 {site['name']} is {'DEGRADED' if incident['severity'] == SEVERITY_MEDIUM else 'DOWN'}"
        html = EMAIL_TEMPLATE.format(
            color="#DC2626",
            heading=f"🔴 Incident: {site['name']}",
            url=site["url"],
            rows=(
                f"<p><strong>Severity:</strong> {incident['severity']}</p>"
                f"<p><strong>Details:</strong> {incident.get('ai_summary') or ''}</p>"
            ),
            time=_now_text(),
        )
        payload = {
            "type": "incident",
            "incident": incident,
            "site": site,
            "message": f"Incident: {site['name']} is {incident['status']}",
        }
        return self._fan_out(site, "incident", incident.get("severity"), subject, html, slack_text, payload)

    def notify_resolution(self, incident: dict, site: dict) -> dict:
        """Tell the team a site recovered."""
        minutes = _minutes(incident.get("duration"))
        slack_text = (
            f"✅ Incident resolved for {site['name']}\n"
            f"Duration: {minutes} minutes\n"
            f"Resolved: {incident.get('end_time')}\n"
            + (f"Summary: {incident['ai_summary']}\n" if incident.get("ai_summary") else "")
            + f"URL: {site['url']}"
        )
        subject = f"🟢 {site['name']} is back UP"
        html = EMAIL_TEMPLATE.format(
            color="#059669",
            heading=f"🟢 Recovered: {site['name']}",
            url=site["url"],
            rows=f"<p><strong>Downtime:</strong> {minutes} minutes</p>",
            time=_now_text(),
        )
        payload = {
            "type": "resolution",
            "incident_id": incident.get("id"),
            "incident": incident,
            "site": site,
            "resolved_at": incident.get("end_time"),
            "message": f"Incident resolved for {site['name']}",
        }
        return self._fan_out(site, "resolution", None, subject, html, slack_text, payload)

    def send_ssl_expiry_notification(self, site: dict, ssl_info: dict) -> int:
        """Email the organization's admins about an expiring certificate."""
        days = ssl_info.get("days_remaining")
        subject = f"🔒 SSL certificate for {site['name']} expires in {days} days"
        html = EMAIL_TEMPLATE.format(
            color="#D97706",
            heading=f"🔒 SSL certificate expiring: {site['name']}",
            url=site["url"],
            rows=(
                f"<p><strong>Issuer:</strong> {ssl_info.get('issuer')}</p>"
                f"<p><strong>Expires:</strong> {ssl_info.get('valid_to')} ({days} days)</p>"
            ),
            time=_now_text(),
        )
        sent = 0
        try:
            for member in self._load_members(site["organization_id"]):
                if member.get("role") in (ROLE_ORG_ADMIN, ROLE_SUPER_ADMIN):
                    self.send_email(member["email"], subject, html)
                    sent += 1
        except Exception as e:
            logger.error(f"Error sending SSL expiry notification for {site['name']}: {e}")
        return sent

    # ─── Delivery ────────────────────────────────────────────────────────────

    def _fan_out(self, site: dict, event: str, severity: Optional[str],
                 subject: str, html: str, slack_text: str, payload: dict) -> dict:
        try:
            plan = get_organization_plan_name(self.supabase, site["organization_id"])
            allowed = get_plan_limits(self.supabase, plan).get("allowed_channels") or ["email"]
            members = self._load_members(site["organization_id"])

            sent = 0
            channels = {"email": 0, "slack": 0, "sms": 0, "webhook": 0}

            for member in members:
                if not self._should_notify(member, site, event, severity):
                    continue

                member_sent = 0
                if member.get("notify_via_email") and "email" in allowed:
                    if self.send_email(member["email"], subject, html):
                        channels["email"] += 1
                        member_sent += 1

                if member.get("notify_via_slack") and "slack" in allowed and member.get("slack_webhook_url"):
                    if self.send_slack(member["slack_webhook_url"], slack_text):
                        channels["slack"] += 1
                        member_sent += 1

                if member.get("notify_via_sms") and "sms" in allowed and member.get("sms_phone_number"):
                    logger.info(f"Would send SMS to {member['sms_phone_number']}")
                    channels["sms"] += 1
                    member_sent += 1

                if member.get("notify_via_webhook") and "webhook" in allowed and member.get("custom_webhook_url"):
                    if self.send_custom_webhook(member["custom_webhook_url"], payload):
                        channels["webhook"] += 1
                        member_sent += 1

                if member_sent:
                    sent += 1

            logger.info(f"Sent {sent} {event} notifications: {channels}")
            return {"success": True, "sent": sent, "total": len(members), "channels": channels}
        except Exception as e:
            logger.error(f"Error notifying team of {event}: {e}")
            return {"success": False, "message": str(e)}

    def send_email(self, to: str, subject: str, html: str) -> bool:
        """Send an HTML email over SMTP with STARTTLS."""
        if not self.settings.smtp_configured:
            logger.debug(f"SMTP not configured, skipping email to {to}")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"MonitHQ <{self.settings.smtp_email}>"
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))

        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port) as server:
                server.starttls(context=context)
                server.login(self.settings.smtp_email, self.settings.smtp_password)
                server.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False

    def send_slack(self, webhook_url: str, text: str) -> bool:
        try:
            response = self.http.post(webhook_url, json={"text": text})
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Error sending Slack notification: {e}")
            return False

    def send_custom_webhook(self, url: str, payload: dict) -> bool:
        try:
            response = self.http.post(
                url,
                json=payload,
                headers={"User-Agent": "MonitHQ-Notify/1.0"},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Webhook notification failed for {url}: {e}")
            return False
