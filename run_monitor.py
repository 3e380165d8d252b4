#!/usr/bin/env python3
"""
MonitHQ Monitor Runner
Run this via cron or as a background service to perform periodic checks.

Usage:
    # Run once (for cron)
    python run_monitor.py

    # Run continuously with built-in scheduler
    python run_monitor.py --daemon

Cron example (every minute; each site still honours its own interval):
    * * * * * cd /path/to/monithq && /path/to/venv/bin/python run_monitor.py
"""

import sys
import time
import logging
import argparse
from dotenv import load_dotenv

from config import Settings, setup_logging

logger = logging.getLogger("monithq.runner")


def run_once(settings: Settings):
    """Run a single monitoring cycle."""
    from monitor_engine import run_monitoring_cycle

    if not settings.supabase_url or not settings.supabase_key:
        logger.error("Set SUPABASE_URL and SUPABASE_SERVICE_KEY in .env")
        sys.exit(1)

    return run_monitoring_cycle(settings)


def run_daemon(settings: Settings, interval: int = 60):
    """Run monitoring continuously."""
    logger.info(f"MonitHQ Monitor Daemon starting (interval: {interval}s)")

    while True:
        try:
            summary = run_once(settings)
            if not summary["checked"]:
                logger.info("No sites due for checking")
        except Exception:
            logger.exception("Monitoring cycle failed")

        time.sleep(interval)


def main(argv=None):
    parser = argparse.ArgumentParser(description="MonitHQ Monitor Runner")
    parser.add_argument("--daemon", action="store_true", help="Run continuously")
    parser.add_argument("--interval", type=int, default=60,
                        help="Seconds between cycles (daemon mode)")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = Settings()
    setup_logging(settings)

    if args.daemon:
        run_daemon(settings, args.interval)
    else:
        run_once(settings)


if __name__ == "__main__":
    main()
