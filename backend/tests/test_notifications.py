from __future__ import annotations

import httpx
import pytest

from voucher_portal.models.enums import CommunicationPreference, DeliveryStatus, EmailStatus, NotificationChannel, UserType
from voucher_portal.services.email_template_service import email_template_service
from voucher_portal.services.guardian_service import guardian_service
from voucher_portal.services.notification_service import NotificationService


class FakeMailer:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to, subject, body, tag=None):
        if self.failures:
            self.failures -= 1
            raise httpx.ConnectError("connection refused")
        self.sent.append((to, subject, body))
        return f"msg-{len(self.sent)}"


async def _notification(db, service, action, recipient, metadata=None):
    return await service.create_and_deliver(db, action, recipient, metadata=metadata or {})


@pytest.mark.asyncio
async def test_transient_failure_is_recorded_and_retried(db, make_user):
    mailer = FakeMailer(failures=1)
    service = NotificationService(mailer=mailer)
    user = await make_user()
    notification = await _notification(db, service, "application_submitted", user, {"application_id": 7})

    with pytest.raises(httpx.ConnectError):
        await service.deliver(db, notification)
    assert notification.delivery_status == DeliveryStatus.ERROR
    assert "connection refused" in notification.details["error"]
    assert mailer.sent == []

    await service.deliver(db, notification)
    assert notification.delivery_status == DeliveryStatus.SENT
    assert notification.message_id == "msg-1"
    [(to, subject, _)] = mailer.sent
    assert (to, subject) == (user.email, "We received your application #7")


@pytest.mark.asyncio
async def test_bounced_recipient_fails_without_retry(db, make_user):
    mailer = FakeMailer()
    service = NotificationService(mailer=mailer)
    user = await make_user(email_status=EmailStatus.BOUNCED)
    notification = await _notification(db, service, "application_submitted", user)

    await service.deliver(db, notification)
    assert notification.delivery_status == DeliveryStatus.FAILED
    assert notification.details["error"] == "Recipient email is bounced"
    # Terminal rows are left alone.
    await service.deliver(db, notification)
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_edited_template_replaces_built_in_text(db, make_user):
    mailer = FakeMailer()
    service = NotificationService(mailer=mailer)
    admin = await make_user(UserType.ADMINISTRATOR)
    user = await make_user(first_name="Ada")
    await email_template_service.update(
        db, "application_submitted", "Application {application_id} received", "Hi {first_name}, thanks.", admin
    )
    notification = await _notification(db, service, "application_submitted", user, {"application_id": 3})

    await service.deliver(db, notification)
    [(_, subject, body)] = mailer.sent
    assert subject == "Application 3 received"
    assert body.startswith("Hi Ada, thanks.")


@pytest.mark.asyncio
async def test_dependent_mail_goes_to_guardian(db, make_user):
    mailer = FakeMailer()
    service = NotificationService(mailer=mailer)
    guardian = await make_user(email="parent@example.com")
    child = await make_user(email="dependent-1@dependents.voucher-portal.local")
    own_address = await make_user(email="teen@example.com", dependent_email="teen@example.com")
    await guardian_service.add_relationship(db, guardian, child, "Parent")
    await guardian_service.add_relationship(db, guardian, own_address, "Parent")

    for recipient in (child, own_address):
        notification = await _notification(db, service, "application_submitted", recipient)
        await service.deliver(db, notification)
    assert [to for to, _, _ in mailer.sent] == ["parent@example.com", "teen@example.com"]

    guardian.email_status = EmailStatus.COMPLAINED
    notification = await _notification(db, service, "application_submitted", child)
    await service.deliver(db, notification)
    assert notification.delivery_status == DeliveryStatus.FAILED


@pytest.mark.asyncio
async def test_guardian_letter_preference_applies_to_dependent(db, make_user):
    service = NotificationService(mailer=FakeMailer())
    guardian = await make_user(
        communication_preference=CommunicationPreference.LETTER,
        physical_address_1="1 Main St",
        city="Baltimore",
        state="MD",
        zip_code="21201",
    )
    child = await make_user()
    await guardian_service.add_relationship(db, guardian, child, "Parent")

    notification = await _notification(db, service, "application_submitted", child)
    assert notification.channel == NotificationChannel.LETTER
    await service.deliver(db, notification)
    assert notification.delivery_status == DeliveryStatus.SENT
    assert notification.details["print_queue_item_id"]
