"""
MonitHQ - Configuration
All settings come from environment variables (a .env file is loaded by the
entry points via python-dotenv).
"""

import os
import logging
from dataclasses import dataclass, field

from supabase import create_client, Client

from constants import PROBE_TIMEOUT_SECONDS, DEGRADED_LATENCY_MS


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    # Service key bypasses row level security; the monitor needs every org's sites.
    supabase_key: str = field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", "") or os.getenv("SUPABASE_KEY", "")
    )

    app_env: str = field(default_factory=lambda: os.getenv("APP_ENV", "production"))
    cron_secret: str = field(default_factory=lambda: os.getenv("CRON_SECRET", ""))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    probe_timeout_seconds: int = field(
        default_factory=lambda: _env_int("PROBE_TIMEOUT_SECONDS", PROBE_TIMEOUT_SECONDS)
    )
    degraded_latency_ms: int = field(
        default_factory=lambda: _env_int("DEGRADED_LATENCY_MS", DEGRADED_LATENCY_MS)
    )
    ssl_checks_enabled: bool = field(default_factory=lambda: _env_bool("SSL_CHECKS_ENABLED", True))

    smtp_email: str = field(default_factory=lambda: os.getenv("SMTP_EMAIL", ""))
    smtp_password: str = field(default_factory=lambda: os.getenv("SMTP_PASSWORD", ""))
    smtp_host: str = field(default_factory=lambda: os.getenv("SMTP_HOST", "smtp.gmail.com"))
    smtp_port: int = field(default_factory=lambda: _env_int("SMTP_PORT", 587))

    pusher_app_id: str = field(default_factory=lambda: os.getenv("PUSHER_APP_ID", ""))
    pusher_key: str = field(default_factory=lambda: os.getenv("PUSHER_KEY", ""))
    pusher_secret: str = field(default_factory=lambda: os.getenv("PUSHER_SECRET", ""))
    pusher_cluster: str = field(default_factory=lambda: os.getenv("PUSHER_CLUSTER", "us2"))

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in ("development", "dev")

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_email and self.smtp_password)

    @property
    def pusher_configured(self) -> bool:
        return bool(self.pusher_app_id and self.pusher_key and self.pusher_secret)


def create_supabase_client(settings: Settings) -> Client:
    """Create a Supabase client, failing loudly when it is not configured."""
    if not settings.supabase_url or not settings.supabase_key:
        raise RuntimeError("Set SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables")
    return create_client(settings.supabase_url, settings.supabase_key)


def setup_logging(settings: Settings):
    """Configure root logging once for an entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
