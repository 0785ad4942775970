from __future__ import annotations

import datetime as dt

import pytest

from voucher_portal.models.enums import (
    ApplicationStatus,
    EvaluationStatus,
    ReviewStatus,
    UserType,
    VendorStatus,
    W9RejectionReason,
    W9Status,
)
from voucher_portal.models.schemas import EvaluationComplete
from voucher_portal.models.tables import Product
from voucher_portal.services import evaluation_service
from voucher_portal.services.evaluation_service import EvaluationError
from voucher_portal.services.storage_service import get_storage
from voucher_portal.services.w9_service import W9Error, review_w9, upload_w9


@pytest.mark.asyncio
async def test_w9_upload_and_approval(db, make_user):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR, vendor_status=VendorStatus.PENDING)

    with pytest.raises(W9Error):
        await upload_w9(db, vendor, b"GIF89a", "w9.gif", "image/gif")
    await upload_w9(db, vendor, b"%PDF-1.4 w9", "w9.pdf", "application/pdf")
    assert vendor.w9_status == W9Status.PENDING_REVIEW
    assert get_storage().load(vendor.w9_key) == b"%PDF-1.4 w9"

    await review_w9(db, vendor, admin, ReviewStatus.APPROVED)
    assert vendor.w9_status == W9Status.APPROVED
    assert vendor.vendor_approved


@pytest.mark.asyncio
async def test_w9_rejection_needs_reason_and_code(db, make_user):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR, vendor_status=VendorStatus.PENDING)
    with pytest.raises(W9Error):
        await review_w9(db, vendor, admin, ReviewStatus.REJECTED, rejection_reason="Blurry")
    review = await review_w9(
        db, vendor, admin, ReviewStatus.REJECTED, W9RejectionReason.TAX_ID_MISMATCH, "Tax id does not match"
    )
    assert review.rejection_reason_code == W9RejectionReason.TAX_ID_MISMATCH
    assert vendor.w9_status == W9Status.REJECTED
    assert vendor.w9_rejections == 1
    assert not vendor.vendor_approved


async def _assigned(db, make_user, make_application):
    admin = await make_user(UserType.ADMINISTRATOR)
    evaluator = await make_user(UserType.EVALUATOR)
    application = await make_application(await make_user())
    evaluation = await evaluation_service.assign(db, application, evaluator, admin)
    return evaluator, evaluation


@pytest.mark.asyncio
async def test_assign_requires_evaluator_and_active_application(db, make_user, make_application):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR)
    application = await make_application(await make_user())
    with pytest.raises(EvaluationError):
        await evaluation_service.assign(db, application, vendor, admin)
    draft = await make_application(await make_user(), status=ApplicationStatus.DRAFT)
    with pytest.raises(EvaluationError):
        await evaluation_service.assign(db, draft, await make_user(UserType.EVALUATOR), admin)


@pytest.mark.asyncio
async def test_schedule_and_reschedule(db, make_user, make_application):
    evaluator, evaluation = await _assigned(db, make_user, make_application)
    when = dt.datetime(2026, 5, 4, 10, 0)
    await evaluation_service.schedule(db, evaluation, evaluator, when, "Library")
    assert evaluation.status == EvaluationStatus.SCHEDULED

    with pytest.raises(EvaluationError, match="reason"):
        await evaluation_service.schedule(db, evaluation, evaluator, when + dt.timedelta(days=1), "Library")
    await evaluation_service.schedule(db, evaluation, evaluator, when + dt.timedelta(days=1), "Home", "Car trouble")
    assert evaluation.reschedule_reason == "Car trouble"
    assert evaluation.location == "Home"

    stranger = await make_user(UserType.EVALUATOR)
    with pytest.raises(EvaluationError, match="another evaluator"):
        await evaluation_service.request_additional_info(db, evaluation, stranger, "?")
    assert await evaluation_service.list_for_evaluator(db, evaluator) == [evaluation]
    assert await evaluation_service.list_for_evaluator(db, stranger) == []


@pytest.mark.asyncio
async def test_complete_checks_products(db, make_user, make_application):
    evaluator, evaluation = await _assigned(db, make_user, make_application)
    product = Product(name="Screen Reader", device_types=["software"])
    db.add(product)
    await db.flush()

    def form(product_id):
        return EvaluationComplete(
            location="Office",
            needs="Reading mail",
            notes="Tried two readers",
            attendees=[{"name": "Pat", "relationship": "Daughter"}],
            products_tried=[{"product_id": product_id, "reaction": "Liked it"}],
            recommended_product_ids=[product_id],
        )

    with pytest.raises(EvaluationError, match="Unknown products: 404"):
        await evaluation_service.complete(db, evaluation, evaluator, form(404))
    await evaluation_service.complete(db, evaluation, evaluator, form(product.id))
    assert evaluation.status == EvaluationStatus.COMPLETED
    assert evaluation.recommended_product_ids == [product.id]
    assert evaluation.attendees == [{"name": "Pat", "relationship": "Daughter"}]
    with pytest.raises(EvaluationError, match="already completed"):
        await evaluation_service.complete(db, evaluation, evaluator, form(product.id))
