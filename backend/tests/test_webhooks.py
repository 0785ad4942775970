from __future__ import annotations

import base64
import json
import types

import pytest
from sqlalchemy import select
from twilio.request_validator import RequestValidator

from voucher_portal.api.routes import inbound
from voucher_portal.api.routes.inbound import router as inbound_router
from voucher_portal.api.routes.webhooks import router as webhooks_router
from voucher_portal.core import tasks
from voucher_portal.core.config import settings
from voucher_portal.core.security import hmac_sha256_hex
from voucher_portal.models.enums import DeliveryStatus, EmailStatus, NotificationChannel, UserType
from voucher_portal.models.tables import Event, InboundEmail, Notification

RAW_EMAIL = (
    "From: jane@example.com\r\n"
    "To: proof@inbound.example.org\r\n"
    "Subject: Income proof\r\n"
    "Message-ID: <abc-123@mail.example.com>\r\n"
    "\r\n"
    "See attached.\r\n"
)


@pytest.fixture
def sent_jobs(monkeypatch):
    jobs: list[int] = []
    monkeypatch.setattr(tasks, "process_inbound_email", types.SimpleNamespace(send=jobs.append))
    return jobs


@pytest.fixture
def inbound_password(monkeypatch):
    monkeypatch.setattr(settings, "POSTMARK_INBOUND_PASSWORD", "inbound-secret")
    monkeypatch.setattr(settings, "POSTMARK_WEBHOOK_TOKEN", None)
    return "inbound-secret"


def _basic(password: str, user: str = "actionmailbox") -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def test_inbound_auth_requires_configured_secret(monkeypatch):
    monkeypatch.setattr(settings, "POSTMARK_INBOUND_PASSWORD", None)
    monkeypatch.setattr(settings, "POSTMARK_WEBHOOK_TOKEN", None)
    assert not inbound.is_authentic(b"{}", None, _basic("anything")["Authorization"])


def test_inbound_auth_accepts_signature_or_basic(inbound_password):
    body = b'{"RawEmail": "x"}'
    assert inbound.is_authentic(body, hmac_sha256_hex(inbound_password, body), None)
    assert inbound.is_authentic(body, None, _basic(inbound_password)["Authorization"])
    assert not inbound.is_authentic(body, None, _basic(inbound_password, user="other")["Authorization"])
    assert not inbound.is_authentic(body, "deadbeef", None)


@pytest.mark.asyncio
async def test_postmark_inbound_stores_and_enqueues(db, client_for, inbound_password, sent_jobs):
    payload = {"RawEmail": RAW_EMAIL, "From": "jane@example.com", "Subject": "Income proof", "OriginalRecipient": "proof@inbound.example.org"}
    async with client_for(inbound_router) as client:
        unauthorized = await client.post("/inbound/postmark", json=payload, headers=_basic("wrong"))
        assert unauthorized.status_code == 401

        missing = await client.post("/inbound/postmark", json={"From": "x"}, headers=_basic(inbound_password))
        assert missing.status_code == 422

        resp = await client.post(
            "/rails/action_mailbox/postmark/inbound_emails", json=payload, headers=_basic(inbound_password)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "received"

        again = await client.post("/inbound/postmark", json=payload, headers=_basic(inbound_password))
        assert again.json() == {"status": "duplicate", "id": resp.json()["id"]}

    [stored] = (await db.execute(select(InboundEmail))).scalars().all()
    assert stored.message_id == "abc-123@mail.example.com"
    assert stored.recipient == "proof@inbound.example.org"
    assert sent_jobs == [stored.id]


@pytest.mark.asyncio
async def test_fax_status_updates_notification(db, make_user, client_for):
    provider_fax = await make_user(UserType.ADMINISTRATOR)
    notification = Notification(
        recipient_id=provider_fax.id,
        action="medical_certification_requested",
        channel=NotificationChannel.FAX,
        delivery_status=DeliveryStatus.SENT,
        message_id="FX123",
        details={},
    )
    db.add(notification)
    await db.commit()

    async with client_for(webhooks_router) as client:
        resp = await client.post(
            "/webhooks/twilio/fax_status",
            data={"FaxSid": "FX123", "Status": "delivered", "AccountSid": "AC1", "NumPages": "2"},
        )
        assert resp.json() == {"success": True}
        missing = await client.post("/webhooks/twilio/fax_status", data={"FaxSid": "FX999", "Status": "failed"})
        assert missing.status_code == 200
        assert missing.json() == {"success": False, "error": "Notification not found"}

    assert notification.delivery_status == DeliveryStatus.DELIVERED
    assert notification.delivered_at is not None
    assert notification.details["fax_status"] == "delivered"
    assert notification.details["fax_status_details"] == {"FaxSid": "FX123", "Status": "delivered", "NumPages": "2"}


@pytest.mark.asyncio
async def test_fax_status_failure_and_signature(db, make_user, client_for, monkeypatch):
    user = await make_user(UserType.ADMINISTRATOR)
    notification = Notification(
        recipient_id=user.id, action="x", channel=NotificationChannel.FAX,
        delivery_status=DeliveryStatus.SENT, message_id="FX777", details={},
    )
    db.add(notification)
    await db.commit()
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "twilio-token")
    params = {"FaxSid": "FX777", "Status": "busy"}
    url = "http://test/webhooks/twilio/fax_status"

    async with client_for(webhooks_router) as client:
        forged = await client.post(url, data=params, headers={"X-Twilio-Signature": "forged"})
        assert forged.status_code == 403
        signed = await client.post(
            url, data=params, headers={"X-Twilio-Signature": RequestValidator("twilio-token").compute_signature(url, params)}
        )
        assert signed.json() == {"success": True}

    assert notification.delivery_status == DeliveryStatus.FAILED
    assert notification.details["fax_status"] == "failed"


def _signed(body: bytes, secret: str) -> dict:
    return {"X-Webhook-Signature": hmac_sha256_hex(secret, body), "Content-Type": "application/json"}


@pytest.mark.asyncio
async def test_email_bounce_marks_user_and_provider(db, make_user, make_application, client_for, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRETS", "old-secret, new-secret")
    user = await make_user(email="Bouncy@Example.com")
    application = await make_application(await make_user(), medical_provider_email="bouncy@example.com")
    await db.commit()

    event = {
        "email": "bouncy@example.com",
        "event": "bounce",
        "type": "bounce",
        "bounce": {"type": "HardBounce", "diagnostics": "550 mailbox unavailable"},
    }
    body = json.dumps(event).encode()
    async with client_for(webhooks_router) as client:
        unsigned = await client.post("/webhooks/email_events", content=body, headers={"Content-Type": "application/json"})
        assert unsigned.status_code == 401

        resp = await client.post("/webhooks/email_events", content=body, headers=_signed(body, "new-secret"))
        assert resp.json() == {"success": True}
        duplicate = await client.post("/webhooks/email_events", content=body, headers=_signed(body, "old-secret"))
        assert duplicate.json() == {"success": True, "duplicate": True}

    assert user.email_status == EmailStatus.BOUNCED
    assert application.medical_provider_email_status == EmailStatus.BOUNCED
    events = (await db.execute(select(Event).where(Event.action == "email_bounced"))).scalars().all()
    assert len(events) == 2


@pytest.mark.asyncio
async def test_email_event_validation(db, client_for, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRETS", None)
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "only-secret")
    async with client_for(webhooks_router) as client:
        for payload in (
            b"not json",
            json.dumps({"email": "a@b.c", "event": "bounce"}).encode(),
            json.dumps({"email": "a@b.c", "event": "bounce", "type": "bounce", "bounce": {"type": "Hard"}}).encode(),
            json.dumps({"email": "a@b.c", "event": "complaint", "type": "complaint", "complaint": {}}).encode(),
        ):
            resp = await client.post("/webhooks/email_events", content=payload, headers=_signed(payload, "only-secret"))
            assert resp.status_code == 422, payload


@pytest.mark.asyncio
async def test_email_event_dispatches_on_event_not_subtype(db, make_user, client_for, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRETS", "secret")
    bounced = await make_user(email="soft@example.com")
    complained = await make_user(email="angry@example.com")
    await db.commit()

    bounce = {
        "email": "soft@example.com",
        "event": "bounce",
        "type": "permanent",
        "bounce": {"type": "HardBounce", "diagnostics": "550"},
    }
    complaint = {
        "email": "angry@example.com",
        "event": "complaint",
        "type": "abuse",
        "complaint": {"type": "abuse", "feedback_id": "fb-1"},
    }
    async with client_for(webhooks_router) as client:
        for payload in (bounce, complaint):
            body = json.dumps(payload).encode()
            resp = await client.post("/webhooks/email_events", content=body, headers=_signed(body, "secret"))
            assert resp.json() == {"success": True}

        unknown = json.dumps({"email": "a@b.c", "event": "delivered", "type": "bounce", "bounce": {}}).encode()
        resp = await client.post("/webhooks/email_events", content=unknown, headers=_signed(unknown, "secret"))
        assert resp.status_code == 422
        assert resp.json()["detail"] == "Unhandled event type: delivered"

    assert bounced.email_status == EmailStatus.BOUNCED
    assert complained.email_status == EmailStatus.COMPLAINED
    [logged] = (await db.execute(select(Event).where(Event.action == "email_complaint"))).scalars().all()
    assert logged.details["detail"] == {"type": "abuse", "feedback_id": "fb-1", "subtype": "abuse"}
