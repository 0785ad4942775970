"""Voucher issuing, redemption and cancellation.

A voucher is worth the sum of the per-disability policy values for the
constituent and is valid for ``voucher_validity_period_months`` after it is
issued.  Vendors redeem it in one or more transactions once they have
verified the constituent's identity (see ``voucher_verification``).
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import string
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from voucher_portal.core.database import lock_row
from voucher_portal.models.enums import (
    ApplicationStatus,
    TransactionStatus,
    TransactionType,
    VoucherStatus,
)
from voucher_portal.models.tables import (
    Application,
    Product,
    User,
    Voucher,
    VoucherTransaction,
    VoucherTransactionProduct,
)
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.policy_service import policy_service
from voucher_portal.services.voucher_verification import voucher_verification_service
from voucher_portal.utils.helpers import add_months, money, utcnow

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12


class VoucherError(Exception):
    pass


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_reference_number(voucher: Voucher, now: Optional[dt.datetime] = None) -> str:
    now = now or utcnow()
    return f"TX-{voucher.code[:6]}-{now:%y%m%d%H%M}-{secrets.token_hex(2)[:3].upper()}"


def expiration_date(voucher: Voucher, validity_months: int) -> Optional[dt.datetime]:
    if voucher.issued_at is None:
        return None
    return add_months(voucher.issued_at, validity_months)


def is_expired(voucher: Voucher, validity_months: int, now: Optional[dt.datetime] = None) -> bool:
    if voucher.status == VoucherStatus.EXPIRED:
        return True
    expires = expiration_date(voucher, validity_months)
    return expires is not None and expires <= (now or utcnow())


def days_until_expiry(voucher: Voucher, validity_months: int, now: Optional[dt.datetime] = None) -> Optional[int]:
    expires = expiration_date(voucher, validity_months)
    if expires is None:
        return None
    return (expires - (now or utcnow())).days


class VoucherService:
    async def validity_months(self, db: AsyncSession) -> int:
        return await policy_service.get_int(db, "voucher_validity_period_months", 6)

    async def calculate_value(self, db: AsyncSession, constituent: User) -> Decimal:
        total = Decimal("0")
        for disability in constituent.disabilities:
            total += Decimal(await policy_service.get_int(db, f"voucher_value_{disability.value}_disability", 0))
        return money(total)

    async def get_by_code(self, db: AsyncSession, code: str) -> Optional[Voucher]:
        result = await db.execute(select(Voucher).where(Voucher.code == (code or "").strip().upper()))
        return result.scalar_one_or_none()

    async def _unique_code(self, db: AsyncSession) -> str:
        while True:
            code = generate_code()
            exists = await db.execute(select(Voucher.id).where(Voucher.code == code))
            if exists.scalar_one_or_none() is None:
                return code

    async def issue(self, db: AsyncSession, application: Application, actor: Optional[User] = None) -> Voucher:
        if application.status != ApplicationStatus.APPROVED:
            raise VoucherError("Vouchers can only be issued for approved applications")
        existing = await db.execute(
            select(Voucher).where(Voucher.application_id == application.id, Voucher.status == VoucherStatus.ACTIVE)
        )
        if existing.scalars().first() is not None:
            raise VoucherError("Application already has an active voucher")
        constituent = await db.get(User, application.user_id)
        value = await self.calculate_value(db, constituent)
        if value <= 0:
            raise VoucherError("Constituent has no disabilities eligible for a voucher value")

        voucher = Voucher(
            code=await self._unique_code(db),
            application_id=application.id,
            status=VoucherStatus.ACTIVE,
            initial_value=value,
            remaining_value=value,
            issued_at=utcnow(),
        )
        db.add(voucher)
        await db.flush()
        months = await self.validity_months(db)
        logger.info("[voucher] issued %s (%s) for application %s", voucher.code, value, application.id)

        await audit_service.log_safely(
            db,
            action="voucher_issued",
            actor=actor,
            auditable=application,
            metadata={"voucher_id": voucher.id, "voucher_code": voucher.code, "initial_value": str(value)},
        )
        await notification_service.create_and_deliver(
            db,
            "voucher_assigned",
            constituent,
            actor=actor,
            notifiable=voucher,
            metadata={
                "application_id": application.id,
                "voucher_code": voucher.code,
                "voucher_value": f"${value:,.2f}",
                "expiration_date": expiration_date(voucher, months).strftime("%B %d, %Y"),
            },
        )
        return voucher

    async def can_redeem(self, db: AsyncSession, voucher: Voucher, amount) -> bool:
        amount = money(amount)
        if voucher.status != VoucherStatus.ACTIVE:
            return False
        if is_expired(voucher, await self.validity_months(db)):
            return False
        if amount > money(voucher.remaining_value):
            return False
        minimum = await policy_service.get_int(db, "voucher_minimum_redemption_amount", 0)
        return amount >= minimum

    async def redeem(
        self,
        db: AsyncSession,
        voucher: Voucher,
        vendor: User,
        amount,
        product_quantities: Optional[Dict[int, int]] = None,
        notes: Optional[str] = None,
    ) -> VoucherTransaction:
        """Record a completed redemption and decrement the balance.

        The voucher row is locked for the rest of the transaction.  The caller
        commits; use :meth:`redeem_and_commit` to also consume the vendor's
        identity verification.
        """
        amount = money(amount)
        voucher = await lock_row(db, Voucher, voucher.id)
        if not vendor.vendor_approved:
            raise VoucherError("Vendor is not approved to process vouchers")
        if not await voucher_verification_service.is_verified(vendor, voucher):
            raise VoucherError("Constituent identity must be verified before redemption")
        if amount <= 0:
            raise VoucherError("Redemption amount must be greater than zero")
        if amount > money(voucher.remaining_value):
            raise VoucherError("Redemption amount exceeds the voucher's remaining value")
        if not await self.can_redeem(db, voucher, amount):
            raise VoucherError("Voucher cannot be redeemed for this amount")

        now = utcnow()
        txn = VoucherTransaction(
            voucher_id=voucher.id,
            vendor_id=vendor.id,
            amount=amount,
            transaction_type=TransactionType.REDEMPTION,
            status=TransactionStatus.COMPLETED,
            reference_number=generate_reference_number(voucher, now),
            notes=notes,
            processed_at=now,
        )
        for product_id, quantity in (product_quantities or {}).items():
            if quantity is None or int(quantity) <= 0:
                continue
            if await db.get(Product, int(product_id)) is None:
                raise VoucherError(f"Unknown product {product_id}")
            txn.products.append(VoucherTransactionProduct(product_id=int(product_id), quantity=int(quantity)))
        db.add(txn)

        voucher.remaining_value = money(money(voucher.remaining_value) - amount)
        voucher.last_used_at = now
        voucher.vendor_id = vendor.id
        if voucher.remaining_value < Decimal("0.01"):
            voucher.remaining_value = Decimal("0.00")
            voucher.status = VoucherStatus.REDEEMED
        await db.flush()
        logger.info("[voucher] %s redeemed %s by vendor %s (%s)", voucher.code, amount, vendor.id, txn.reference_number)

        application = await db.get(Application, voucher.application_id)
        constituent = await db.get(User, application.user_id) if application else None
        await audit_service.log_safely(
            db,
            action="voucher_redeemed",
            actor=vendor,
            auditable=voucher,
            metadata={
                "amount": str(amount),
                "transaction_id": txn.id,
                "reference_number": txn.reference_number,
                "remaining_value": str(voucher.remaining_value),
                "products": {str(k): v for k, v in (product_quantities or {}).items()},
            },
        )
        await notification_service.create_and_deliver(
            db,
            "voucher_redeemed",
            constituent,
            actor=vendor,
            notifiable=voucher,
            metadata={
                "voucher_code": voucher.code,
                "amount": f"${amount:,.2f}",
                "remaining_value": f"${voucher.remaining_value:,.2f}",
                "vendor_name": vendor.business_name or vendor.full_name,
                "transaction_id": txn.id,
            },
        )
        return txn

    async def redeem_and_commit(
        self,
        db: AsyncSession,
        voucher: Voucher,
        vendor: User,
        amount,
        product_quantities: Optional[Dict[int, int]] = None,
        notes: Optional[str] = None,
    ) -> VoucherTransaction:
        txn = await self.redeem(db, voucher, vendor, amount, product_quantities, notes)
        await db.commit()
        await voucher_verification_service.clear(vendor, voucher)
        return txn

    async def cancel(self, db: AsyncSession, voucher: Voucher, admin: User, reason: Optional[str] = None) -> Voucher:
        if voucher.status != VoucherStatus.ACTIVE:
            raise VoucherError("Only active vouchers can be cancelled")
        voucher.status = VoucherStatus.CANCELLED
        note = f"Cancelled at {utcnow():%Y-%m-%d %H:%M:%S}" + (f": {reason}" if reason else "")
        voucher.notes = "\n".join(n for n in (voucher.notes, note) if n)
        await db.flush()
        await audit_service.log_safely(
            db, action="voucher_cancelled", actor=admin, auditable=voucher, metadata={"reason": reason}
        )
        return voucher

    async def transactions_for_vendor(self, db: AsyncSession, vendor_id: int) -> List[VoucherTransaction]:
        result = await db.execute(
            select(VoucherTransaction)
            .options(selectinload(VoucherTransaction.products))
            .where(VoucherTransaction.vendor_id == vendor_id)
            .order_by(VoucherTransaction.processed_at.desc())
        )
        return list(result.scalars().all())

    async def vendor_totals(
        self,
        db: AsyncSession,
        vendor_id: int,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> Dict[str, object]:
        """Completed amount and per-status counts for a vendor's transactions."""
        stmt = select(func.coalesce(func.sum(VoucherTransaction.amount), 0)).where(
            VoucherTransaction.vendor_id == vendor_id,
            VoucherTransaction.status == TransactionStatus.COMPLETED,
        )
        if start is not None and end is not None:
            stmt = stmt.where(VoucherTransaction.processed_at.between(start, end))
        total = money((await db.execute(stmt)).scalar_one())
        counts = await db.execute(
            select(VoucherTransaction.status, func.count())
            .where(VoucherTransaction.vendor_id == vendor_id)
            .group_by(VoucherTransaction.status)
        )
        return {
            "total_amount": total,
            "counts": {getattr(s, "value", s): c for s, c in counts.all()},
        }


voucher_service = VoucherService()

__all__ = [
    "VoucherService",
    "voucher_service",
    "VoucherError",
    "expiration_date",
    "is_expired",
    "days_until_expiry",
    "generate_code",
]
