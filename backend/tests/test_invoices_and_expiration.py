from __future__ import annotations

import datetime as dt
import itertools
from decimal import Decimal

import pytest
from sqlalchemy import select

from voucher_portal.models.enums import (
    ApplicationStatus,
    InvoiceStatus,
    TransactionStatus,
    UserType,
    VoucherStatus,
)
from voucher_portal.models.tables import Event, Notification, Voucher, VoucherTransaction
from voucher_portal.services.expiration_service import voucher_expiration_processor
from voucher_portal.services.invoice_service import InvoiceError, invoice_service
from voucher_portal.utils.helpers import utcnow

_refs = itertools.count(1)


async def _voucher(db, make_user, make_application, issued_at=None):
    constituent = await make_user()
    application = await make_application(constituent, status=ApplicationStatus.APPROVED)
    voucher = Voucher(
        code=f"V{next(_refs):011d}",
        application_id=application.id,
        status=VoucherStatus.ACTIVE,
        initial_value=Decimal("5000.00"),
        remaining_value=Decimal("5000.00"),
        issued_at=issued_at or utcnow(),
    )
    db.add(voucher)
    await db.flush()
    return voucher


async def _transaction(db, voucher, vendor, amount, processed_at, status=TransactionStatus.COMPLETED):
    txn = VoucherTransaction(
        voucher_id=voucher.id,
        vendor_id=vendor.id,
        amount=Decimal(amount),
        status=status,
        reference_number=f"TX-TEST-{next(_refs)}",
        processed_at=processed_at,
    )
    db.add(txn)
    await db.flush()
    return txn


@pytest.mark.asyncio
async def test_generate_invoice_for_vendor(db, make_user, make_application):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR)
    voucher = await _voucher(db, make_user, make_application)
    now = utcnow()
    a = await _transaction(db, voucher, vendor, "100.00", now - dt.timedelta(days=2))
    b = await _transaction(db, voucher, vendor, "250.50", now - dt.timedelta(days=1))
    await _transaction(db, voucher, vendor, "75.00", now - dt.timedelta(days=1), status=TransactionStatus.PENDING)
    await _transaction(db, voucher, vendor, "10.00", now - dt.timedelta(days=30))

    invoice = await invoice_service.generate_for_vendor(db, vendor.id, now=now)
    assert invoice is not None
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.total_amount == Decimal("350.50")
    assert invoice.invoice_number == f"INV-{utcnow():%Y%m}-0001"
    assert invoice.end_date == now.replace(hour=23, minute=59, second=59, microsecond=999999)
    assert {a.invoice_id, b.invoice_id} == {invoice.id}

    actions = {n.action: n.recipient_id for n in (await db.execute(select(Notification))).scalars().all()}
    assert actions["invoice_generated"] == vendor.id
    assert actions["invoice_ready_for_review"] == admin.id

    # Nothing left to invoice.
    assert await invoice_service.generate_for_vendor(db, vendor.id, now=now) is None


@pytest.mark.asyncio
async def test_cancel_releases_transactions_for_next_run(db, make_user, make_application):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR)
    voucher = await _voucher(db, make_user, make_application)
    now = utcnow()
    txn = await _transaction(db, voucher, vendor, "40.00", now - dt.timedelta(hours=3))

    first = await invoice_service.generate_for_vendor(db, vendor.id, now=now)
    await invoice_service.cancel(db, first, admin, "wrong period")
    await db.refresh(txn)
    assert txn.invoice_id is None
    assert first.status == InvoiceStatus.CANCELLED

    second = await invoice_service.generate_for_vendor(db, vendor.id, now=now)
    assert second.invoice_number.endswith("-0002")
    await db.refresh(txn)
    assert txn.invoice_id == second.id


@pytest.mark.asyncio
async def test_overlap_is_strict(db, make_user):
    vendor = await make_user(UserType.VENDOR)
    start = dt.datetime(2025, 1, 1)
    middle = dt.datetime(2025, 1, 15)
    await invoice_service.create(db, vendor.id, start, middle, [])
    with pytest.raises(InvoiceError, match="overlaps"):
        await invoice_service.create(db, vendor.id, dt.datetime(2025, 1, 10), dt.datetime(2025, 1, 20), [])
    touching = await invoice_service.create(db, vendor.id, middle, dt.datetime(2025, 1, 29), [])
    assert touching.total_amount == Decimal("0.00")
    with pytest.raises(InvoiceError, match="after start"):
        await invoice_service.create(db, vendor.id, middle, middle, [])


@pytest.mark.asyncio
async def test_approve_and_pay(db, make_user):
    admin = await make_user(UserType.ADMINISTRATOR)
    vendor = await make_user(UserType.VENDOR)
    invoice = await invoice_service.create(db, vendor.id, dt.datetime(2025, 2, 1), dt.datetime(2025, 2, 14), [])

    with pytest.raises(InvoiceError, match="GAD invoice reference"):
        await invoice_service.mark_paid(db, invoice, admin, "  ")
    await invoice_service.approve(db, invoice, admin)
    assert invoice.status == InvoiceStatus.APPROVED
    with pytest.raises(InvoiceError):
        await invoice_service.approve(db, invoice, admin)

    await invoice_service.mark_paid(db, invoice, admin, "GAD-123", check_number="1001")
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.payment_recorded_at is not None
    [paid] = (await db.execute(select(Notification).where(Notification.action == "payment_issued"))).scalars().all()
    assert paid.recipient_id == vendor.id
    with pytest.raises(InvoiceError, match="cannot be cancelled"):
        await invoice_service.cancel(db, invoice, admin)


@pytest.mark.asyncio
async def test_expiration_sweep(db, make_user, make_application, enqueued):
    now = dt.datetime(2026, 3, 10, 12, 0)
    expired = await _voucher(db, make_user, make_application, issued_at=dt.datetime(2025, 8, 1))
    today = await _voucher(db, make_user, make_application, issued_at=dt.datetime(2025, 9, 10, 18, 0))
    soon = await _voucher(db, make_user, make_application, issued_at=dt.datetime(2025, 9, 17, 12, 0))
    later = await _voucher(db, make_user, make_application, issued_at=dt.datetime(2026, 1, 1))

    summary = await voucher_expiration_processor.process(db, now)
    assert summary == {"expired": 1, "expiring_today": 1, "expiring_soon": 1, "admin_reports": 0}
    assert expired.status == VoucherStatus.EXPIRED
    assert today.status == soon.status == later.status == VoucherStatus.ACTIVE

    actions = sorted(n.action for n in (await db.execute(select(Notification))).scalars().all())
    assert actions == ["voucher_expired", "voucher_expiring_soon", "voucher_expiring_today"]
    events = {e.action for e in (await db.execute(select(Event))).scalars().all()}
    assert {"voucher_expired", "final_expiration_warning_sent", "expiration_warning_sent"} <= events

    # Warnings are sent once.
    again = await voucher_expiration_processor.process(db, now)
    assert again == {"expired": 0, "expiring_today": 0, "expiring_soon": 0, "admin_reports": 0}


@pytest.mark.asyncio
async def test_expired_report_goes_to_admins(db, make_user, make_application):
    admin = await make_user(UserType.ADMINISTRATOR)
    voucher = await _voucher(db, make_user, make_application, issued_at=dt.datetime(2024, 1, 1))
    voucher.status = VoucherStatus.EXPIRED
    await db.flush()
    now = utcnow() + dt.timedelta(days=1)

    summary = await voucher_expiration_processor.process(db, now)
    assert summary["admin_reports"] == 1
    [report] = (
        await db.execute(select(Notification).where(Notification.action == "vouchers_expired_report"))
    ).scalars().all()
    assert report.recipient_id == admin.id
    assert report.details["count"] == 1
    assert report.details["total_remaining"] == "$5,000.00"
