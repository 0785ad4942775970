from __future__ import annotations

import pytest
from sqlalchemy import select

from voucher_portal.api.routes.admin import router as admin_router
from voucher_portal.models.enums import UserType
from voucher_portal.models.tables import Event
from voucher_portal.services import email_template_service as template_module
from voucher_portal.services.email_template_service import (
    EmailTemplateError,
    email_template_service,
    render_template,
    validate_template,
)
from voucher_portal.utils.templates import TEMPLATES, missing_required, placeholders, render


class RecordingMailer:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body, tag=None):
        self.sent.append((to, subject, body, tag))
        return "test-message"


def test_placeholders_accept_plain_names_only():
    assert placeholders("Hi {first_name}, see {portal_url}") == {"first_name", "portal_url"}
    for bad in ("{}", "{0}", "{user.email}", "{items[0]}", "unbalanced {"):
        with pytest.raises(ValueError):
            placeholders(bad)


def test_built_in_templates_keep_required_placeholders():
    for name, (_, body) in TEMPLATES.items():
        assert missing_required(name, body) == [], name


def test_validate_template():
    validate_template("password_reset", "Reset", "Go to {reset_url}")
    with pytest.raises(EmailTemplateError, match=r"\{reset_url\}"):
        validate_template("password_reset", "Reset", "Contact support")
    with pytest.raises(EmailTemplateError, match="Subject"):
        validate_template("password_reset", " ", "{reset_url}")
    with pytest.raises(EmailTemplateError, match="Invalid placeholder"):
        validate_template("password_reset", "Reset", "{reset_url} {user.__class__}")


def test_render_template_requires_variables():
    with pytest.raises(ValueError, match="reset_url"):
        render_template("password_reset", "Reset", "Go to {reset_url}", {})
    subject, body = render_template("password_reset", "Reset {first_name}", "Go to {reset_url}", {"reset_url": "https://x/r", "first_name": "Al"})
    assert subject == "Reset Al"
    assert body.startswith("Go to https://x/r")


def test_render_leaves_unknown_placeholders_blank():
    subject, _ = render("voucher_assigned", {})
    assert subject == "Your voucher "


@pytest.mark.asyncio
async def test_update_versions_and_keeps_previous(db, make_user):
    admin = await make_user(UserType.ADMINISTRATOR)
    default_subject, default_body = TEMPLATES["w9_rejected"]

    first = await email_template_service.update(
        db, "w9_rejected", "W9 for {business_name}", "Rejected: {rejection_reason}. {business_name}", admin, "Vendor W9"
    )
    assert (first.version, first.previous_subject, first.previous_body) == (1, default_subject, default_body)

    second = await email_template_service.update(
        db, "w9_rejected", "W9 for {business_name}", "Rejected because {rejection_reason} ({business_name})", admin
    )
    assert second is first
    assert second.version == 2
    assert second.previous_body == "Rejected: {rejection_reason}. {business_name}"
    assert second.description == "Vendor W9"

    unchanged = await email_template_service.update(db, "w9_rejected", second.subject, second.body, admin)
    assert unchanged.version == 2

    events = (await db.execute(select(Event).where(Event.action == "email_template_updated").order_by(Event.id))).scalars().all()
    assert [e.details["version"] for e in events] == [1, 2, 2]
    assert events[0].details["changed"] == ["subject", "body"]
    assert events[2].details["changed"] == []

    with pytest.raises(EmailTemplateError, match="Unknown template"):
        await email_template_service.update(db, "no_such_template", "x", "y", admin)


@pytest.mark.asyncio
async def test_admin_email_template_routes(db, make_user, client_for, monkeypatch):
    mailer = RecordingMailer()
    monkeypatch.setattr(template_module.email_template_service, "_mailer", mailer)
    admin = await make_user(UserType.ADMINISTRATOR, email="boss@example.org")
    await db.commit()

    async with client_for(admin_router, user=admin) as client:
        listing = await client.get("/admin/email_templates")
        assert len(listing.json()) == len(TEMPLATES)
        assert not any(t["customized"] for t in listing.json())

        reset = await client.get("/admin/email_templates/password_reset")
        assert reset.json()["required_variables"] == ["reset_url"]
        assert (await client.get("/admin/email_templates/unknown")).status_code == 404

        invalid = await client.put(
            "/admin/email_templates/password_reset", json={"subject": "Reset", "body": "No link here"}
        )
        assert invalid.status_code == 422

        saved = await client.put(
            "/admin/email_templates/password_reset",
            json={"subject": "Reset for {first_name}", "body": "Follow {reset_url}", "description": "Reset mail"},
        )
        assert saved.status_code == 200
        assert saved.json()["customized"] is True
        assert saved.json()["version"] == 1

        sent = await client.post(
            "/admin/email_templates/password_reset/test", json={"variables": {"first_name": "Pat"}}
        )
        assert (sent.json()["subject"], sent.json()["message_id"]) == ("Reset for Pat", "test-message")
        assert sent.json()["body"].startswith("Follow [reset_url]")

    [(to, subject, _, tag)] = mailer.sent
    assert (to, subject, tag) == ("boss@example.org", "[TEST] Reset for Pat", "email_template_test")
