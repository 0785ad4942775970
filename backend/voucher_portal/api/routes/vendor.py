"""Vendor portal: W9 upload, voucher lookup, identity check and redemption."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_db_session, require_vendor
from voucher_portal.core.config import settings
from voucher_portal.core.observability import sentry_set_tags
from voucher_portal.models.enums import VoucherStatus
from voucher_portal.models.schemas import (
    DobVerificationRequest,
    InvoiceRead,
    RedemptionRequest,
    TransactionRead,
    UserRead,
    VerificationResultRead,
    VoucherRead,
)
from voucher_portal.models.tables import User, Voucher
from voucher_portal.services import w9_service
from voucher_portal.services.invoice_service import invoice_service
from voucher_portal.services.voucher_service import VoucherError, days_until_expiry, voucher_service
from voucher_portal.services.voucher_verification import voucher_verification_service
from voucher_portal.services.w9_service import W9Error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vendor", tags=["vendor"])


async def _voucher_by_code(db: AsyncSession, code: str) -> Voucher:
    voucher = await voucher_service.get_by_code(db, code)
    if voucher is None:
        raise HTTPException(status_code=404, detail="Voucher not found")
    return voucher


@router.post("/w9", response_model=UserRead)
async def upload_w9(
    file: UploadFile = File(...),
    vendor: User = Depends(require_vendor),
    db: AsyncSession = Depends(get_db_session),
):
    data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")
    try:
        await w9_service.upload_w9(db, vendor, data, file.filename or "w9.pdf", file.content_type or "")
    except W9Error as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return vendor


@router.get("/vouchers/{code}")
async def lookup_voucher(
    code: str,
    vendor: User = Depends(require_vendor),
    db: AsyncSession = Depends(get_db_session),
):
    voucher = await _voucher_by_code(db, code)
    months = await voucher_service.validity_months(db)
    return {
        "voucher": VoucherRead.model_validate(voucher),
        "days_until_expiry": days_until_expiry(voucher, months),
        "redeemable": voucher.status == VoucherStatus.ACTIVE and await voucher_service.can_redeem(
            db, voucher, voucher.remaining_value
        ),
        "verified": await voucher_verification_service.is_verified(vendor, voucher),
    }


@router.post("/vouchers/{code}/verify", response_model=VerificationResultRead)
async def verify_identity(
    code: str,
    payload: DobVerificationRequest,
    vendor: User = Depends(require_vendor),
    db: AsyncSession = Depends(get_db_session),
):
    voucher = await _voucher_by_code(db, code)
    result = await voucher_verification_service.verify(db, voucher, vendor, payload.date_of_birth)
    await db.commit()
    return VerificationResultRead(success=result.success, message_key=result.message_key, attempts_left=result.attempts_left)


@router.post("/vouchers/{code}/redeem", response_model=TransactionRead, status_code=status.HTTP_201_CREATED)
async def redeem_voucher(
    code: str,
    payload: RedemptionRequest,
    vendor: User = Depends(require_vendor),
    db: AsyncSession = Depends(get_db_session),
):
    voucher = await _voucher_by_code(db, code)
    sentry_set_tags({"voucher_id": voucher.id, "vendor_id": vendor.id})
    quantities: Dict[int, int] = {pid: 1 for pid in payload.product_ids}
    quantities.update(payload.product_quantities)
    try:
        txn = await voucher_service.redeem_and_commit(db, voucher, vendor, payload.amount, quantities, payload.notes)
    except VoucherError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    return txn


@router.get("/transactions", response_model=List[TransactionRead])
async def list_transactions(vendor: User = Depends(require_vendor), db: AsyncSession = Depends(get_db_session)):
    return await voucher_service.transactions_for_vendor(db, vendor.id)


@router.get("/transactions/totals")
async def transaction_totals(
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    vendor: User = Depends(require_vendor),
    db: AsyncSession = Depends(get_db_session),
):
    return await voucher_service.vendor_totals(db, vendor.id, start, end)


@router.get("/invoices", response_model=List[InvoiceRead])
async def list_invoices(vendor: User = Depends(require_vendor), db: AsyncSession = Depends(get_db_session)):
    return await invoice_service.list(db, vendor_id=vendor.id)
