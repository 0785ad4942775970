"""Dramatiq task definitions for background processing.

Notification delivery, the daily voucher expiration sweep, bi-weekly vendor
invoice generation and inbound email processing run outside the request
cycle.  Start a worker pointed at the worker module:

```bash
dramatiq voucher_portal.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; ``DRAMATIQ_BROKER_URL`` overrides
it.  With ``ENVIRONMENT=test`` an in-process ``StubBroker`` is used so
actors can be imported (and their ``send`` patched) without Redis.

Actors are synchronous; each one runs the async services with
``asyncio.run`` on a session from a dedicated engine, since an async engine
cannot be shared between event loops.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, TimeLimit, ShutdownNotifications, Retries
from dramatiq.results import Results
from dramatiq.results.backends import RedisBackend
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from voucher_portal.core import database
from voucher_portal.core.config import settings
from voucher_portal.core.observability import sentry_breadcrumb, sentry_capture, sentry_metric_inc

logger = logging.getLogger(__name__)

T = TypeVar("T")

broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL


def _has_mw(broker, mw_cls):
    return any(isinstance(m, mw_cls) for m in broker.middleware)


if settings.ENVIRONMENT == "test":
    broker = StubBroker()
    broker.emit_after("process_boot")
else:
    broker = RedisBroker(url=broker_url)
    if not _has_mw(broker, Results):
        broker.add_middleware(Results(backend=RedisBackend(url=broker_url)))
    if not _has_mw(broker, AgeLimit):
        broker.add_middleware(AgeLimit())
    if not _has_mw(broker, TimeLimit):
        broker.add_middleware(TimeLimit())
    if not _has_mw(broker, ShutdownNotifications):
        broker.add_middleware(ShutdownNotifications())
    if not _has_mw(broker, Retries):
        # Exponential backoff up to ~1m
        broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))

dramatiq.set_broker(broker)
logger.info("Dramatiq broker configured (%s)", type(broker).__name__)


class NotificationNotReady(Exception):
    """The notification row is not visible yet (enqueued before commit)."""


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    if settings.ENVIRONMENT == "test":
        async with database.AsyncSessionLocal() as session:
            yield session
        return
    engine = create_async_engine(database.db_url, poolclass=NullPool)
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            yield session
    finally:
        await engine.dispose()


def run_job(name: str, job: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run ``job`` in a fresh session and commit; failures roll back and re-raise."""

    async def _run() -> T:
        async with worker_session() as session:
            try:
                result = await job(session)
                await session.commit()
                return result
            except Exception:
                await session.rollback()
                raise

    started = time.monotonic()
    sentry_breadcrumb("job", f"{name}.start")
    try:
        result = asyncio.run(_run())
    except Exception as e:
        logger.error("[job] %s failed: %s", name, e)
        sentry_metric_inc("jobs.run", tags={"job": name, "status": "error"})
        sentry_capture(e)
        raise
    logger.info("[job] %s finished in %.2fs", name, time.monotonic() - started)
    sentry_metric_inc("jobs.run", tags={"job": name, "status": "ok"})
    return result


@dramatiq.actor(max_retries=5)
def deliver_notification(notification_id: int) -> None:
    """Deliver one stored notification through its channel."""
    from voucher_portal.models.tables import Notification
    from voucher_portal.services.notification_service import notification_service

    async def job(db: AsyncSession):
        notification = await db.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotReady(f"Notification {notification_id} not found")
        try:
            await notification_service.deliver(db, notification)
        except Exception:
            # Keep the recorded error status; the raise makes dramatiq retry.
            await db.commit()
            raise
        return notification.delivery_status.value

    status = run_job("deliver_notification", job)
    logger.info("[notify] notification %s -> %s", notification_id, status)


@dramatiq.actor(max_retries=1, time_limit=30 * 60 * 1000)
def process_voucher_expirations() -> dict:
    from voucher_portal.services.expiration_service import voucher_expiration_processor

    return run_job("process_voucher_expirations", voucher_expiration_processor.process)


@dramatiq.actor(max_retries=1, time_limit=30 * 60 * 1000)
def generate_vendor_invoices() -> list[int]:
    """Roll completed, uninvoiced redemptions into pending invoices."""
    from voucher_portal.services.invoice_service import invoice_service
    from voucher_portal.services.user_service import get_system_user

    async def job(db: AsyncSession):
        system = await get_system_user(db)
        invoices = await invoice_service.generate_all(db, actor=system)
        return [i.id for i in invoices]

    return run_job("generate_vendor_invoices", job)


@dramatiq.actor(max_retries=3)
def process_inbound_email(inbound_email_id: int) -> None:
    from voucher_portal.mailboxes import process_inbound_email as process
    from voucher_portal.models.tables import InboundEmail

    async def job(db: AsyncSession):
        inbound = await db.get(InboundEmail, inbound_email_id)
        if inbound is None:
            logger.warning("[mailbox] inbound email %s not found", inbound_email_id)
            return None
        await process(db, inbound)
        return inbound.status.value

    status = run_job("process_inbound_email", job)
    logger.info("[mailbox] inbound email %s -> %s", inbound_email_id, status)


__all__ = [
    "broker",
    "deliver_notification",
    "process_voucher_expirations",
    "generate_vendor_invoices",
    "process_inbound_email",
    "run_job",
    "worker_session",
]
