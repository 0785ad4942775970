from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from voucher_portal.models.enums import UserType
from voucher_portal.models.schemas import TimelineEntry
from voucher_portal.models.tables import Event
from voucher_portal.services.audit_service import audit_service, event_fingerprint
from voucher_portal.services.event_deduplication import EventDeduplicationService
from voucher_portal.services.policy_service import DEFAULT_POLICIES, policy_service


@pytest.mark.asyncio
async def test_policy_defaults_and_override(db, make_user):
    admin = await make_user(UserType.ADMINISTRATOR)
    assert await policy_service.get(db, "voucher_validity_period_months") == 6
    assert await policy_service.get(db, "no_such_policy") is None
    assert await policy_service.get_int(db, "no_such_policy", 42) == 42

    await policy_service.set(db, "voucher_validity_period_months", 12, actor=admin)
    assert await policy_service.get(db, "voucher_validity_period_months") == 12
    merged = await policy_service.all(db)
    assert merged["voucher_validity_period_months"] == 12
    assert len(merged) == len(DEFAULT_POLICIES)

    events = (await db.execute(select(Event).where(Event.action == "policy_changed"))).scalars().all()
    assert len(events) == 1
    assert events[0].details["previous_value"] == 6
    assert events[0].user_id == admin.id


@pytest.mark.asyncio
async def test_audit_suppresses_repeats_within_window(db, make_user):
    user = await make_user()
    first = await audit_service.log(db, action="profile_updated", actor=user, auditable=user)
    second = await audit_service.log(db, action="profile_updated", actor=user, auditable=user)
    assert first is not None
    assert second is None

    # Attempts are always recorded.
    a = await audit_service.log(db, action="voucher_verification_attempt", actor=user, auditable=user)
    b = await audit_service.log(db, action="voucher_verification_attempt", actor=user, auditable=user)
    assert a is not None and b is not None


@pytest.mark.asyncio
async def test_audit_keeps_proof_submissions_of_different_types(db, make_user):
    user = await make_user()
    income = await audit_service.log(
        db, action="proof_submitted", actor=user, auditable=user,
        metadata={"proof_type": "income", "submission_method": "web"},
    )
    residency = await audit_service.log(
        db, action="proof_submitted", actor=user, auditable=user,
        metadata={"proof_type": "residency", "submission_method": "web"},
    )
    assert income is not None and residency is not None


def test_event_fingerprint():
    assert event_fingerprint("proof_submitted", {"proof_type": "income", "submission_method": "email"}) == (
        "proof_submitted_income_email"
    )
    assert event_fingerprint("proof_attached", {"proof_type": "income", "file_key": "k1"}) == "proof_attached_income_file_k1"
    assert event_fingerprint("voucher_issued", {"x": 1}) == "voucher_issued"


def _entry(kind, action, when, **details):
    return TimelineEntry(kind=kind, action=action, occurred_at=when, details=details)


def test_timeline_collapses_repeated_status_changes_within_a_minute():
    service = EventDeduplicationService()
    when = dt.datetime(2025, 3, 1, 10, 0, 5)
    fields = {"from_status": "in_progress", "to_status": "approved", "change_type": "status"}
    first = _entry("status_change", "status_change_approved", when, **fields)
    repeat = _entry("status_change", "status_change_approved", when + dt.timedelta(seconds=20), **fields)
    next_day = _entry("status_change", "status_change_approved", when + dt.timedelta(days=1), **fields)
    result = service.deduplicate([first, repeat, next_day])
    assert [e.occurred_at for e in result] == [next_day.occurred_at, repeat.occurred_at]


def test_timeline_collapses_proof_submission_sources():
    service = EventDeduplicationService()
    when = dt.datetime(2025, 3, 1, 10, 0, 5)
    event = _entry("event", "income_proof_submitted", when, proof_type="income", submission_method="web")
    notification = _entry(
        "notification", "income_proof_submitted", when + dt.timedelta(seconds=10),
        proof_type="income", submission_method="web",
    )
    later = _entry("event", "income_proof_submitted", when + dt.timedelta(minutes=5), proof_type="income", submission_method="web")
    result = service.deduplicate([event, notification, later])
    assert [e.occurred_at for e in result] == [later.occurred_at, event.occurred_at]
    assert result[1].kind == "event"
