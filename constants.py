"""
MonitHQ - Shared Constants
Status values, probe tuning and plan fallbacks used across the service.
"""

# Site/Check Status
SITE_STATUS_ONLINE = "ONLINE"
SITE_STATUS_OFFLINE = "OFFLINE"
SITE_STATUS_DEGRADED = "DEGRADED"
SITE_STATUS_MAINTENANCE = "MAINTENANCE"
SITE_STATUS_UNKNOWN = "UNKNOWN"

SITE_STATUSES = (
    SITE_STATUS_ONLINE,
    SITE_STATUS_OFFLINE,
    SITE_STATUS_DEGRADED,
    SITE_STATUS_MAINTENANCE,
    SITE_STATUS_UNKNOWN,
)

# Statuses that open an incident when entered from ONLINE
FAILING_STATUSES = (SITE_STATUS_OFFLINE, SITE_STATUS_DEGRADED)

# Incident Status
INCIDENT_INVESTIGATING = "INVESTIGATING"
INCIDENT_IDENTIFIED = "IDENTIFIED"
INCIDENT_MONITORING = "MONITORING"
INCIDENT_RESOLVED = "RESOLVED"

INCIDENT_STATUSES = (
    INCIDENT_INVESTIGATING,
    INCIDENT_IDENTIFIED,
    INCIDENT_MONITORING,
    INCIDENT_RESOLVED,
)

SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_HIGH = "HIGH"

# User Roles
ROLE_USER = "USER"
ROLE_ORG_ADMIN = "ORG_ADMIN"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"

# ─── Probe ───────────────────────────────────────────────────────────────────
PROBE_METHOD = "HEAD"
PROBE_USER_AGENT = "MonitHQ-HealthCheck/1.0"
PROBE_TIMEOUT_SECONDS = 10
DEGRADED_LATENCY_MS = 5000

UPTIME_WINDOW_DAYS = 30
LATENCY_SMOOTHING = 0.8  # weight kept from the previous average

# Check Intervals (in seconds)
CHECK_INTERVAL_MIN = 30
CHECK_INTERVAL_DEFAULT = 60
CHECK_INTERVAL_MAX = 3600
CHECK_INTERVAL_NEW_SITE = 300

# SSL
SSL_CHECK_EVERY_SECONDS = 24 * 60 * 60
SSL_ALERT_THRESHOLD_DAYS = 30
SSL_ALERT_MILESTONES = (30, 14, 7, 3, 1, 0, -1)

# Webhook event types
WEBHOOK_INCIDENT_CREATED = "incident_created"
WEBHOOK_INCIDENT_UPDATED = "incident_updated"
WEBHOOK_INCIDENT_RESOLVED = "incident_resolved"
WEBHOOK_SITE_DOWN = "site_down"
WEBHOOK_SITE_UP = "site_up"
WEBHOOK_SITE_DEGRADED = "site_degraded"
WEBHOOK_SITE_CREATED = "site_created"
WEBHOOK_SITE_DELETED = "site_deleted"

WEBHOOK_EVENTS = (
    WEBHOOK_INCIDENT_CREATED,
    WEBHOOK_INCIDENT_UPDATED,
    WEBHOOK_INCIDENT_RESOLVED,
    WEBHOOK_SITE_DOWN,
    WEBHOOK_SITE_UP,
    WEBHOOK_SITE_DEGRADED,
    WEBHOOK_SITE_CREATED,
    WEBHOOK_SITE_DELETED,
)

# Used when the plans table is empty or unreachable
FREE_PLAN_LIMITS = {
    "sites": 1,
    "min_check_interval": 300,
    "max_team_members": 1,
    "allowed_channels": ["email"],
    "features": {},
}

# Pagination
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

# Response Time Ranges: (name, upper bound in ms)
RESPONSE_TIME_RANGES = (
    ("FAST", 100),
    ("NORMAL", 300),
    ("SLOW", 1000),
)


def get_response_time_range(response_time: float) -> str:
    """Bucket a response time into FAST / NORMAL / SLOW / VERY_SLOW."""
    for name, upper in RESPONSE_TIME_RANGES:
        if response_time < upper:
            return name
    return "VERY_SLOW"
