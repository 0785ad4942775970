"""Dramatiq worker configuration.

This module configures the Dramatiq broker and imports all tasks
so they are registered when the worker starts.

Run with:
    python -m dramatiq voucher_portal.worker
"""

import logging
import os
import sys
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[2]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from voucher_portal.core.config import settings  # noqa: E402
from voucher_portal.core.observability import init_sentry  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("voucher_portal.worker")

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

if settings.DATABASE_URL:
    os.environ.setdefault("DATABASE_URL", settings.DATABASE_URL)

# Import tasks to register them (this also configures the broker)
from voucher_portal.core.tasks import (  # noqa: E402,F401
    broker,
    deliver_notification,
    generate_vendor_invoices,
    process_inbound_email,
    process_voucher_expirations,
)

logger.info("Tasks registered successfully")


def _start_cron(name: str, actor, interval: int) -> None:
    def loop():
        while True:
            try:
                logger.info("[cron] enqueue %s interval=%ss", name, interval)
                actor.send()
            except Exception as e:  # pragma: no cover
                logger.error("[cron] failed to enqueue %s: %s", name, e)
            time.sleep(interval)

    t = threading.Thread(target=loop, name=f"{name}-cron", daemon=True)
    t.start()
    logger.info("%s cron loop started (interval=%ss)", name, interval)


def _maybe_start_cron():  # pragma: no cover - simple orchestrator
    # Lightweight cron loop (avoid external scheduler); enabled via WORKER_CRON_ENABLED=true
    if not settings.WORKER_CRON_ENABLED:
        return
    _start_cron("voucher-expirations", process_voucher_expirations, settings.EXPIRATION_SWEEP_INTERVAL_SECONDS)
    _start_cron("vendor-invoices", generate_vendor_invoices, settings.INVOICE_GENERATION_INTERVAL_SECONDS)


_maybe_start_cron()
