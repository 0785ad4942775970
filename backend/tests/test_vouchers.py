from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import update

from voucher_portal.models.enums import ApplicationStatus, TransactionStatus, UserType, VendorStatus, VoucherStatus
from voucher_portal.models.tables import Product, Voucher
from voucher_portal.services.rate_limit import RateLimit, RateLimitExceeded
from voucher_portal.services.policy_service import policy_service
from voucher_portal.services.voucher_service import (
    VoucherError,
    days_until_expiry,
    is_expired,
    voucher_service,
)
from voucher_portal.services.voucher_verification import voucher_verification_service
from voucher_portal.utils.helpers import utcnow


async def _approved_voucher(db, make_user, make_application, **constituent_fields):
    constituent = await make_user(UserType.CONSTITUENT, **constituent_fields)
    application = await make_application(constituent, status=ApplicationStatus.APPROVED)
    voucher = await voucher_service.issue(db, application)
    return constituent, application, voucher


@pytest.mark.asyncio
async def test_rate_limit_counts_per_identifier(db):
    await policy_service.set(db, "proof_submission_rate_limit_web", 2)
    assert await RateLimit.check(db, "proof_submission", 1) == 1
    assert await RateLimit.check(db, "proof_submission", 1) == 2
    with pytest.raises(RateLimitExceeded) as exc:
        await RateLimit.check(db, "proof_submission", 1)
    assert "maximum 2 submissions per 1 hours" in str(exc.value)
    assert 0 < exc.value.retry_after <= 3600
    # Another constituent has their own window.
    assert await RateLimit.check(db, "proof_submission", 2) == 1


@pytest.mark.asyncio
async def test_rate_limit_reset_and_unknown_action(db):
    await policy_service.set(db, "proof_submission_rate_limit_email", 1)
    await RateLimit.check(db, "proof_submission", 9, "email")
    await RateLimit.reset("proof_submission", 9, "email")
    assert await RateLimit.check(db, "proof_submission", 9, "email") == 1
    with pytest.raises(ValueError):
        await RateLimit.check(db, "bogus_action", 9)


@pytest.mark.asyncio
async def test_issue_voucher_value_from_disabilities(db, make_user, make_application, enqueued):
    _, application, voucher = await _approved_voucher(
        db, make_user, make_application, hearing_disability=True, vision_disability=True
    )
    assert len(voucher.code) == 12
    assert voucher.initial_value == Decimal("10000.00")
    assert voucher.remaining_value == voucher.initial_value
    assert voucher.status == VoucherStatus.ACTIVE
    assert enqueued  # voucher_assigned notification

    with pytest.raises(VoucherError):
        await voucher_service.issue(db, application)


@pytest.mark.asyncio
async def test_issue_requires_approved_application(db, make_user, make_application):
    constituent = await make_user()
    application = await make_application(constituent)
    with pytest.raises(VoucherError):
        await voucher_service.issue(db, application)


def test_expiry_helpers():
    voucher = Voucher(code="ABCDEFGHIJKL", status=VoucherStatus.ACTIVE, issued_at=dt.datetime(2025, 1, 31))
    assert not is_expired(voucher, 6, now=dt.datetime(2025, 7, 30))
    assert is_expired(voucher, 6, now=dt.datetime(2025, 7, 31))
    assert days_until_expiry(voucher, 6, now=dt.datetime(2025, 7, 21)) == 10


@pytest.mark.asyncio
async def test_dob_verification_and_lockout(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    other_vendor = await make_user(UserType.VENDOR)

    first = await voucher_verification_service.verify(db, voucher, vendor, "1999-01-01")
    assert (first.success, first.message_key, first.attempts_left) == (False, "dob_verification_failed", 2)
    second = await voucher_verification_service.verify(db, voucher, vendor, "01/02/1980")
    assert second.attempts_left == 1
    third = await voucher_verification_service.verify(db, voucher, vendor, "bad")
    assert third.message_key == "too_many_attempts"
    blocked = await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")
    assert blocked.message_key == "too_many_attempts"
    assert not await voucher_verification_service.is_verified(vendor, voucher)

    ok = await voucher_verification_service.verify(db, voucher, other_vendor, "01/15/1980")
    assert ok.success and ok.message_key == "dob_verification_success"
    assert await voucher_verification_service.is_verified(other_vendor, voucher)


@pytest.mark.asyncio
async def test_redeem_requires_verification_and_approved_vendor(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    with pytest.raises(VoucherError, match="verified"):
        await voucher_service.redeem(db, voucher, vendor, "100")

    pending = await make_user(UserType.VENDOR, vendor_status=VendorStatus.PENDING)
    await voucher_verification_service.verify(db, voucher, pending, "1980-01-15")
    with pytest.raises(VoucherError, match="not approved"):
        await voucher_service.redeem(db, voucher, pending, "100")


@pytest.mark.asyncio
async def test_redeem_decrements_balance_and_records_products(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    product = Product(name="Amplified Phone", price=Decimal("150.00"), device_types=["phone"])
    db.add(product)
    await db.flush()

    await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")
    txn = await voucher_service.redeem(db, voucher, vendor, "150.00", {product.id: 2})
    assert txn.status == TransactionStatus.COMPLETED
    assert txn.reference_number.startswith(f"TX-{voucher.code[:6]}-")
    assert [(p.product_id, p.quantity) for p in txn.products] == [(product.id, 2)]
    assert voucher.remaining_value == Decimal("4850.00")
    assert voucher.vendor_id == vendor.id
    # Verification is only cleared once the redemption is committed.
    assert await voucher_verification_service.is_verified(vendor, voucher)

    totals = await voucher_service.vendor_totals(db, vendor.id)
    assert totals["total_amount"] == Decimal("150.00")
    assert totals["counts"] == {"completed": 1}


@pytest.mark.asyncio
async def test_redeem_rejects_bad_amounts(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")

    with pytest.raises(VoucherError, match="exceeds"):
        await voucher_service.redeem(db, voucher, vendor, "5000.01")
    with pytest.raises(VoucherError, match="cannot be redeemed"):
        await voucher_service.redeem(db, voucher, vendor, "5.00")
    with pytest.raises(VoucherError, match="Unknown product"):
        await voucher_service.redeem(db, voucher, vendor, "50.00", {999: 1})


@pytest.mark.asyncio
async def test_full_redemption_marks_voucher_redeemed(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")
    await voucher_service.redeem(db, voucher, vendor, "5000")
    assert voucher.status == VoucherStatus.REDEEMED
    assert voucher.remaining_value == Decimal("0.00")
    assert not await voucher_service.can_redeem(db, voucher, "10")


@pytest.mark.asyncio
async def test_cancel_only_active(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    admin = await make_user(UserType.ADMINISTRATOR)
    await voucher_service.cancel(db, voucher, admin, "duplicate")
    assert voucher.status == VoucherStatus.CANCELLED
    assert "duplicate" in voucher.notes
    with pytest.raises(VoucherError):
        await voucher_service.cancel(db, voucher, admin)


@pytest.mark.asyncio
async def test_expired_voucher_cannot_be_redeemed(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    voucher.issued_at = utcnow() - dt.timedelta(days=400)
    assert not await voucher_service.can_redeem(db, voucher, "50")


@pytest.mark.asyncio
async def test_redeem_and_commit_clears_verification(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")

    txn = await voucher_service.redeem_and_commit(db, voucher, vendor, "200.00")
    assert txn.id is not None
    assert not await voucher_verification_service.is_verified(vendor, voucher)
    with pytest.raises(VoucherError, match="verified"):
        await voucher_service.redeem(db, voucher, vendor, "200.00")


@pytest.mark.asyncio
async def test_redeem_reads_the_current_balance(db, make_user, make_application):
    _, _, voucher = await _approved_voucher(db, make_user, make_application)
    vendor = await make_user(UserType.VENDOR)
    await voucher_verification_service.verify(db, voucher, vendor, "1980-01-15")
    await db.commit()

    # Another redemption spent most of the balance behind this session's back.
    await db.execute(
        update(Voucher)
        .where(Voucher.id == voucher.id)
        .values(remaining_value=Decimal("100.00"))
        .execution_options(synchronize_session=False)
    )
    assert voucher.remaining_value == Decimal("5000.00")

    with pytest.raises(VoucherError, match="exceeds"):
        await voucher_service.redeem(db, voucher, vendor, "3000.00")
    assert voucher.remaining_value == Decimal("100.00")
