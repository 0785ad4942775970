"""Daily voucher expiration sweep.

Run by the ``process_voucher_expirations`` actor.  Active vouchers past
their validity period are expired; constituents get a warning a week ahead
and on the last day; administrators get a report of vouchers that expired
the previous day with an unused balance.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.enums import VoucherStatus
from voucher_portal.models.tables import Application, User, Voucher
from voucher_portal.services import cache
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.voucher_service import expiration_date, voucher_service
from voucher_portal.utils.helpers import money, utcnow

logger = logging.getLogger(__name__)

WARNING_DEDUP_SECONDS = 10 * 24 * 3600


class VoucherExpirationProcessor:
    async def _constituent(self, db: AsyncSession, voucher: Voucher) -> Optional[User]:
        application = await db.get(Application, voucher.application_id)
        return await db.get(User, application.user_id) if application else None

    async def _warn(self, db: AsyncSession, voucher: Voucher, action: str, event: str, context: Dict) -> bool:
        if not await cache.claim_once(f"voucher_expiration:{action}:{voucher.id}", WARNING_DEDUP_SECONDS):
            return False
        constituent = await self._constituent(db, voucher)
        await notification_service.create_and_deliver(db, action, constituent, notifiable=voucher, metadata=context)
        await audit_service.log_safely(db, action=event, actor=None, auditable=voucher, metadata=context)
        return True

    async def process(self, db: AsyncSession, now: Optional[dt.datetime] = None) -> Dict[str, int]:
        """Run the sweep; the caller commits.  Returns counts per outcome."""
        now = now or utcnow()
        months = await voucher_service.validity_months(db)
        summary = {"expired": 0, "expiring_today": 0, "expiring_soon": 0, "admin_reports": 0}

        result = await db.execute(select(Voucher).where(Voucher.status == VoucherStatus.ACTIVE))
        for voucher in result.scalars().all():
            expires = expiration_date(voucher, months)
            if expires is None:
                continue
            context = {
                "voucher_code": voucher.code,
                "expiration_date": expires.strftime("%B %d, %Y"),
                "remaining_value": f"${money(voucher.remaining_value):,.2f}",
            }
            if expires <= now:
                voucher.status = VoucherStatus.EXPIRED
                await db.flush()
                constituent = await self._constituent(db, voucher)
                await notification_service.create_and_deliver(
                    db, "voucher_expired", constituent, notifiable=voucher, metadata=context
                )
                await audit_service.log_safely(db, action="voucher_expired", actor=None, auditable=voucher, metadata=context)
                summary["expired"] += 1
            elif expires.date() == now.date():
                if await self._warn(db, voucher, "voucher_expiring_today", "final_expiration_warning_sent", context):
                    summary["expiring_today"] += 1
            elif dt.timedelta(days=6) <= expires - now <= dt.timedelta(days=8):
                context["days_remaining"] = (expires - now).days
                if await self._warn(db, voucher, "voucher_expiring_soon", "expiration_warning_sent", context):
                    summary["expiring_soon"] += 1

        summary["admin_reports"] = await self.report_expired_with_value(db, now)
        logger.info("[voucher] expiration sweep: %s", summary)
        return summary

    async def report_expired_with_value(self, db: AsyncSession, now: dt.datetime) -> int:
        day_start = (now - dt.timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + dt.timedelta(days=1)
        result = await db.execute(
            select(Voucher).where(
                Voucher.status == VoucherStatus.EXPIRED,
                Voucher.remaining_value > 0,
                Voucher.updated_at >= day_start,
                Voucher.updated_at < day_end,
            )
        )
        vouchers = list(result.scalars().all())
        if not vouchers:
            return 0
        total = money(sum((money(v.remaining_value) for v in vouchers), Decimal("0")))
        lines = "\n".join(f"{v.code}: ${money(v.remaining_value):,.2f}" for v in vouchers)
        sent = await notification_service.notify_admins(
            db,
            "vouchers_expired_report",
            metadata={"count": len(vouchers), "total_remaining": f"${total:,.2f}", "voucher_lines": lines},
        )
        return len(sent)


voucher_expiration_processor = VoucherExpirationProcessor()
