"""
MonitHQ - shared test fixtures
"""

import os
import sys
from collections import defaultdict
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from config import Settings  # noqa: E402
import plans  # noqa: E402


def make_supabase():
    """MagicMock Supabase client with one independent mock per table name."""
    tables = defaultdict(MagicMock)
    client = MagicMock()
    client.table.side_effect = lambda name: tables[name]
    client.tables = tables
    return client


@pytest.fixture
def supabase():
    return make_supabase()


@pytest.fixture
def settings():
    return Settings(
        supabase_url="https://db.example.test",
        supabase_key="service-key",
        app_env="production",
        cron_secret="",
        smtp_email="",
        smtp_password="",
        pusher_app_id="",
        pusher_key="",
        pusher_secret="",
        ssl_checks_enabled=False,
    )


@pytest.fixture(autouse=True)
def _reset_plan_cache():
    plans.clear_plans_cache()
    yield
    plans.clear_plans_cache()
