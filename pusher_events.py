"""
MonitHQ - Realtime Broadcasts
Pushes site and incident events to the organization's Pusher channel.
"""

import logging

import pusher

logger = logging.getLogger(__name__)

EVENT_INCIDENT_CREATED = "incident:created"
EVENT_INCIDENT_UPDATED = "incident:updated"
EVENT_INCIDENT_RESOLVED = "incident:resolved"
EVENT_SITE_STATUS_CHANGED = "site:status_changed"


def org_channel(organization_id: str) -> str:
    return f"org-{organization_id}"


class RealtimeBroadcaster:
    """Thin wrapper over the Pusher client. A no-op when credentials are missing."""

    def __init__(self, settings=None, client=None):
        self.client = client
        if self.client is None and settings is not None and settings.pusher_configured:
            self.client = pusher.Pusher(
                app_id=settings.pusher_app_id,
                key=settings.pusher_key,
                secret=settings.pusher_secret,
                cluster=settings.pusher_cluster,
                ssl=True,
            )

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def broadcast(self, organization_id: str, event: str, data: dict) -> bool:
        """Trigger an event; errors are logged and reported as False."""
        if not self.enabled:
            logger.debug(f"Pusher not configured, dropping {event} for org {organization_id}")
            return False
        try:
            self.client.trigger(org_channel(organization_id), event, data)
            return True
        except Exception as e:
            logger.error(f"Error sending Pusher notification {event}: {e}")
            return False

    def incident_created(self, incident: dict, organization_id: str) -> bool:
        return self.broadcast(organization_id, EVENT_INCIDENT_CREATED, incident)

    def incident_updated(self, incident: dict, organization_id: str) -> bool:
        return self.broadcast(organization_id, EVENT_INCIDENT_UPDATED, incident)

    def incident_resolved(self, incident: dict, organization_id: str) -> bool:
        return self.broadcast(organization_id, EVENT_INCIDENT_RESOLVED, incident)

    def site_status_changed(self, site: dict, organization_id: str) -> bool:
        return self.broadcast(organization_id, EVENT_SITE_STATUS_CHANGED, site)
