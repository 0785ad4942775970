"""Vendor invoices.

Completed redemptions are rolled up per vendor into pending invoices on a
bi-weekly schedule.  Administrators approve them and record the payment
(which requires the GAD invoice reference); cancelling an invoice releases
its transactions for the next run.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.enums import InvoiceStatus, TransactionStatus
from voucher_portal.models.tables import Invoice, User, VoucherTransaction
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.policy_service import policy_service
from voucher_portal.utils.helpers import end_of_day, money, utcnow

logger = logging.getLogger(__name__)


class InvoiceError(Exception):
    pass


def _fmt(amount) -> str:
    return f"${money(amount):,.2f}"


class InvoiceService:
    async def next_invoice_number(self, db: AsyncSession, now: Optional[dt.datetime] = None) -> str:
        """``INV-YYYYMM-####`` with a per-month sequence."""
        prefix = f"INV-{(now or utcnow()):%Y%m}-"
        result = await db.execute(select(Invoice.invoice_number).where(Invoice.invoice_number.like(f"{prefix}%")))
        sequences = [int(n.rsplit("-", 1)[1]) for n in result.scalars().all() if n.rsplit("-", 1)[1].isdigit()]
        return f"{prefix}{(max(sequences) if sequences else 0) + 1:04d}"

    async def overlapping(
        self, db: AsyncSession, vendor_id: int, start: dt.datetime, end: dt.datetime, exclude_id: Optional[int] = None
    ) -> bool:
        # Periods that merely touch (one ends where the next starts) do not overlap.
        stmt = select(Invoice.id).where(
            Invoice.vendor_id == vendor_id,
            Invoice.status != InvoiceStatus.CANCELLED,
            Invoice.start_date < end,
            Invoice.end_date > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Invoice.id != exclude_id)
        return (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None

    async def create(
        self,
        db: AsyncSession,
        vendor_id: int,
        start: dt.datetime,
        end: dt.datetime,
        transactions: List[VoucherTransaction],
        status: InvoiceStatus = InvoiceStatus.PENDING,
    ) -> Invoice:
        if end <= start:
            raise InvoiceError("End date must be after start date")
        if await self.overlapping(db, vendor_id, start, end):
            raise InvoiceError("Invoice period overlaps an existing invoice for this vendor")
        total = money(sum((money(t.amount) for t in transactions), Decimal("0")))
        invoice = Invoice(
            vendor_id=vendor_id,
            invoice_number=await self.next_invoice_number(db),
            status=status,
            start_date=start,
            end_date=end,
            total_amount=total,
        )
        db.add(invoice)
        await db.flush()
        for txn in transactions:
            txn.invoice_id = invoice.id
        await db.flush()
        return invoice

    async def period_for_vendor(self, db: AsyncSession, vendor_id: int, now: Optional[dt.datetime] = None) -> tuple[dt.datetime, dt.datetime]:
        now = now or utcnow()
        latest = await db.execute(
            select(func.max(Invoice.end_date)).where(
                Invoice.vendor_id == vendor_id, Invoice.status != InvoiceStatus.CANCELLED
            )
        )
        last_end = latest.scalar_one_or_none()
        if last_end is None:
            days = await policy_service.get_int(db, "invoice_period_days", 14)
            start = (now - dt.timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
        else:
            start = last_end
        return start, end_of_day(now)

    async def generate_for_vendor(
        self, db: AsyncSession, vendor_id: int, actor: Optional[User] = None, now: Optional[dt.datetime] = None
    ) -> Optional[Invoice]:
        start, end = await self.period_for_vendor(db, vendor_id, now)
        result = await db.execute(
            select(VoucherTransaction).where(
                VoucherTransaction.vendor_id == vendor_id,
                VoucherTransaction.status == TransactionStatus.COMPLETED,
                VoucherTransaction.invoice_id.is_(None),
                VoucherTransaction.processed_at >= start,
                VoucherTransaction.processed_at <= end,
            )
        )
        transactions = list(result.scalars().all())
        if not transactions:
            return None

        invoice = await self.create(db, vendor_id, start, end, transactions)
        logger.info(
            "[invoice] %s generated for vendor %s: %s transactions, %s",
            invoice.invoice_number, vendor_id, len(transactions), invoice.total_amount,
        )
        await audit_service.log_safely(
            db,
            action="invoice_generated",
            actor=actor,
            auditable=invoice,
            metadata={
                "transaction_count": len(transactions),
                "total_amount": str(invoice.total_amount),
                "period": {"start": start.isoformat(), "end": end.isoformat()},
            },
        )
        vendor = await db.get(User, vendor_id)
        context = {
            "invoice_number": invoice.invoice_number,
            "total_amount": _fmt(invoice.total_amount),
            "start_date": start.strftime("%B %d, %Y"),
            "end_date": end.strftime("%B %d, %Y"),
            "transaction_count": len(transactions),
            "vendor_name": (vendor.business_name or vendor.full_name) if vendor else "",
        }
        await notification_service.create_and_deliver(db, "invoice_generated", vendor, actor=actor, notifiable=invoice, metadata=context)
        await notification_service.notify_admins(db, "invoice_ready_for_review", actor=actor, notifiable=invoice, metadata=context)
        return invoice

    async def generate_all(self, db: AsyncSession, actor: Optional[User] = None, now: Optional[dt.datetime] = None) -> List[Invoice]:
        """Invoice every vendor with completed, uninvoiced transactions.

        A failure for one vendor is logged and does not stop the others; the
        caller commits.
        """
        result = await db.execute(
            select(VoucherTransaction.vendor_id)
            .where(
                VoucherTransaction.status == TransactionStatus.COMPLETED,
                VoucherTransaction.invoice_id.is_(None),
            )
            .distinct()
        )
        invoices = []
        for vendor_id in result.scalars().all():
            try:
                invoice = await self.generate_for_vendor(db, vendor_id, actor, now)
            except InvoiceError as e:
                logger.warning("[invoice] vendor %s skipped: %s", vendor_id, e)
                continue
            if invoice is not None:
                invoices.append(invoice)
        return invoices

    async def list(
        self, db: AsyncSession, vendor_id: Optional[int] = None, status: Optional[InvoiceStatus] = None
    ) -> List[Invoice]:
        stmt = select(Invoice).order_by(Invoice.created_at.desc())
        if vendor_id is not None:
            stmt = stmt.where(Invoice.vendor_id == vendor_id)
        if status is not None:
            stmt = stmt.where(Invoice.status == status)
        return list((await db.execute(stmt)).scalars().all())

    async def approve(self, db: AsyncSession, invoice: Invoice, admin: User) -> Invoice:
        if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise InvoiceError(f"Cannot approve an invoice that is {invoice.status.value}")
        invoice.status = InvoiceStatus.APPROVED
        invoice.approved_at = utcnow()
        await db.flush()
        await audit_service.log_safely(db, action="invoice_approved", actor=admin, auditable=invoice)
        return invoice

    async def mark_paid(
        self,
        db: AsyncSession,
        invoice: Invoice,
        admin: User,
        gad_invoice_reference: str,
        check_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvoiceError("Cannot pay a cancelled invoice")
        if invoice.status == InvoiceStatus.PAID:
            raise InvoiceError("Invoice is already paid")
        if not (gad_invoice_reference or "").strip():
            raise InvoiceError("GAD invoice reference is required to record payment")
        invoice.status = InvoiceStatus.PAID
        invoice.gad_invoice_reference = gad_invoice_reference.strip()
        invoice.check_number = check_number
        if notes:
            invoice.notes = notes
        invoice.payment_recorded_at = utcnow()
        if invoice.approved_at is None:
            invoice.approved_at = invoice.payment_recorded_at
        await db.flush()
        await audit_service.log_safely(
            db,
            action="invoice_paid",
            actor=admin,
            auditable=invoice,
            metadata={"gad_invoice_reference": invoice.gad_invoice_reference, "check_number": check_number},
        )
        vendor = await db.get(User, invoice.vendor_id)
        await notification_service.create_and_deliver(
            db,
            "payment_issued",
            vendor,
            actor=admin,
            notifiable=invoice,
            metadata={
                "invoice_number": invoice.invoice_number,
                "total_amount": _fmt(invoice.total_amount),
                "gad_invoice_reference": invoice.gad_invoice_reference,
                "check_number": check_number,
            },
        )
        return invoice

    async def cancel(self, db: AsyncSession, invoice: Invoice, admin: User, reason: Optional[str] = None) -> Invoice:
        if invoice.status == InvoiceStatus.PAID:
            raise InvoiceError("Paid invoices cannot be cancelled")
        invoice.status = InvoiceStatus.CANCELLED
        if reason:
            invoice.notes = "\n".join(n for n in (invoice.notes, reason) if n)
        await db.execute(
            update(VoucherTransaction).where(VoucherTransaction.invoice_id == invoice.id).values(invoice_id=None)
        )
        await db.flush()
        await audit_service.log_safely(db, action="invoice_cancelled", actor=admin, auditable=invoice, metadata={"reason": reason})
        return invoice


invoice_service = InvoiceService()

__all__ = ["InvoiceService", "invoice_service", "InvoiceError"]
