"""Vendor W9 upload and administrator review."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.database import lock_row
from voucher_portal.models.enums import ReviewStatus, VendorStatus, W9RejectionReason, W9Status
from voucher_portal.models.tables import User, W9Review
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.storage_service import delete_after_commit, discard_on_rollback, get_storage
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

W9_CONTENT_TYPES = ("application/pdf", "image/jpeg", "image/png")


class W9Error(Exception):
    pass


async def upload_w9(db: AsyncSession, vendor: User, data: bytes, filename: str, content_type: str) -> User:
    if not vendor.is_vendor:
        raise W9Error("Only vendors can upload a W9")
    if content_type not in W9_CONTENT_TYPES:
        raise W9Error("W9 must be a PDF, JPEG or PNG")
    storage = get_storage()
    previous = vendor.w9_key
    vendor.w9_key = storage.save_bytes(data, f"w9/{vendor.id}", filename, content_type)
    vendor.w9_status = W9Status.PENDING_REVIEW
    discard_on_rollback(db, vendor.w9_key)
    await db.flush()
    delete_after_commit(db, previous)
    await audit_service.log_safely(db, action="w9_submitted", actor=vendor, auditable=vendor)
    return vendor


async def review_w9(
    db: AsyncSession,
    vendor: User,
    admin: User,
    status: ReviewStatus,
    rejection_reason_code: Optional[W9RejectionReason] = None,
    rejection_reason: Optional[str] = None,
) -> W9Review:
    """Record a review; the vendor's ``w9_status`` follows it.  Caller commits."""
    if not admin.is_admin:
        raise W9Error("Reviewer must be an administrator")
    if not vendor.is_vendor:
        raise W9Error("W9 reviews apply to vendors only")
    vendor = await lock_row(db, User, vendor.id)
    status = ReviewStatus(status)
    if status == ReviewStatus.REJECTED and (not (rejection_reason or "").strip() or rejection_reason_code is None):
        raise W9Error("Rejection reason and reason code are required")

    review = W9Review(
        vendor_id=vendor.id,
        admin_id=admin.id,
        status=status,
        rejection_reason_code=rejection_reason_code if status == ReviewStatus.REJECTED else None,
        rejection_reason=rejection_reason if status == ReviewStatus.REJECTED else None,
        reviewed_at=utcnow(),
    )
    db.add(review)
    if status == ReviewStatus.APPROVED:
        vendor.w9_status = W9Status.APPROVED
        vendor.vendor_status = VendorStatus.APPROVED
    else:
        vendor.w9_status = W9Status.REJECTED
        vendor.w9_rejections = (vendor.w9_rejections or 0) + 1
    await db.flush()
    logger.info("[w9] vendor %s W9 %s by admin %s", vendor.id, status.value, admin.id)

    await audit_service.log_safely(
        db,
        action=f"w9_{status.value}",
        actor=admin,
        auditable=vendor,
        metadata={"review_id": review.id, "rejection_reason_code": getattr(rejection_reason_code, "value", None)},
    )
    await notification_service.create_and_deliver(
        db,
        f"w9_{status.value}",
        vendor,
        actor=admin,
        notifiable=review,
        metadata={"business_name": vendor.business_name, "rejection_reason": rejection_reason},
    )
    return review
