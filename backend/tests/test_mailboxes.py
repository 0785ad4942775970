from __future__ import annotations

import itertools
from email.message import EmailMessage

import pytest
from sqlalchemy import select

from voucher_portal.mailboxes import (
    MedicalCertificationMailbox,
    ParsedEmail,
    ProofSubmissionMailbox,
    process_inbound_email,
    route,
)
from voucher_portal.mailboxes.medical_certification import extract_application_id
from voucher_portal.mailboxes.proof_submission import MEDICAL_CERTIFICATION, classify_proof
from voucher_portal.models.enums import (
    ApplicationStatus,
    InboundEmailStatus,
    MedicalCertificationStatus,
    ProofStatus,
)
from voucher_portal.models.tables import InboundEmail, Notification
from voucher_portal.services.application_service import ApplicationError, application_service
from voucher_portal.services.policy_service import policy_service

PDF = b"%PDF-1.4\n" + b"1" * 4096
_ids = itertools.count(1)


def build_email(sender, to, subject, body="Please see attached.", attachments=(("proof.pdf", "application", "pdf", PDF),)):
    msg = EmailMessage()
    msg["From"] = sender
    if to:
        msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = f"<msg-{next(_ids)}@mail.example.com>"
    msg.set_content(body)
    for filename, maintype, subtype, data in attachments:
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_string()


async def _store(db, raw):
    mail = ParsedEmail.from_raw(raw)
    inbound = InboundEmail(message_id=mail.message_id, raw_email=raw)
    db.add(inbound)
    await db.flush()
    return inbound


def test_parsed_email_reads_headers_and_attachments():
    raw = build_email("Jane Doe <Jane@Example.com>", "Proof <proof@inbound.example.org>", "Income documents")
    mail = ParsedEmail.from_raw(raw)
    assert mail.sender == "jane@example.com"
    assert mail.recipients == ["proof@inbound.example.org"]
    assert mail.subject == "Income documents"
    assert mail.body.strip() == "Please see attached."
    assert mail.message_id.startswith("msg-")
    [attachment] = mail.attachments
    assert (attachment.filename, attachment.content_type, attachment.data) == ("proof.pdf", "application/pdf", PDF)


def test_classify_proof():
    assert classify_proof("Income proof", "") == "income"
    assert classify_proof("My address", "lease attached") == "residency"
    assert classify_proof("Residency and income", "") == "income"
    assert classify_proof("Signed form", "from my doctor") == MEDICAL_CERTIFICATION
    assert classify_proof("Form", "", ["medical-cert+4@inbound.example.org"]) == MEDICAL_CERTIFICATION
    assert classify_proof("Documents", "") == "income"
    assert classify_proof("Documents", "", filename="residency_lease.pdf") == "residency"
    assert classify_proof("Income", "", filename="medical-form.pdf", allow_medical=False) == "income"
    assert classify_proof("Signed form", "from my doctor", allow_medical=False) == "income"


def test_extract_application_id():
    assert extract_application_id("Re: Application #42", "", []) == 42
    assert extract_application_id("Signed", "for application 17", []) == 17
    assert extract_application_id("Signed", "", ["medical-cert+99@inbound.example.org"]) == 99
    assert extract_application_id("Signed", "", ["medical-cert@inbound.example.org"]) is None


def test_route():
    assert route(["proof@inbound.example.org"]) is ProofSubmissionMailbox
    assert route(["someone@else.org", "medical-cert+3@inbound.example.org"]) is MedicalCertificationMailbox
    assert route(["hello@inbound.example.org"]) is None


@pytest.mark.asyncio
async def test_proof_email_attaches_income_proof(db, make_user, make_application):
    constituent = await make_user(email="jane@example.com")
    application = await make_application(constituent)
    inbound = await _store(db, build_email("Jane <JANE@example.com>", "proof@inbound.example.org", "Income proof"))

    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.DELIVERED
    assert inbound.mailbox == "proof_submission"
    assert inbound.sender == "jane@example.com"
    assert application.income_proof_key.startswith(f"proofs/{application.id}/income/")
    assert application.income_proof_status == ProofStatus.NOT_REVIEWED
    assert application.residency_proof_key is None


@pytest.mark.asyncio
async def test_proof_email_from_unknown_sender_bounces(db):
    inbound = await _store(db, build_email("stranger@example.com", "proof@inbound.example.org", "Income"))
    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.BOUNCED
    assert inbound.bounce_reason == "constituent_not_found"
    [notice] = (
        await db.execute(select(Notification).where(Notification.action == "proof_submission_error"))
    ).scalars().all()
    assert notice.details["to_email"] == "stranger@example.com"
    assert notice.details["error_type"] == "constituent_not_found"


@pytest.mark.asyncio
async def test_proof_email_bounce_reasons(db, make_user, make_application):
    archived = await make_user(email="archived@example.com")
    await make_application(archived, status=ApplicationStatus.ARCHIVED)
    inbound = await _store(db, build_email("archived@example.com", "proof@inbound.example.org", "Income"))
    await process_inbound_email(db, inbound)
    assert inbound.bounce_reason == "inactive_application"

    tiny = await make_user(email="tiny@example.com")
    await make_application(tiny)
    inbound = await _store(
        db,
        build_email(
            "tiny@example.com", "proof@inbound.example.org", "Income",
            attachments=(("proof.pdf", "application", "pdf", b"%PDF-1.4 small"),),
        ),
    )
    await process_inbound_email(db, inbound)
    assert inbound.bounce_reason == "invalid_attachment"

    none = await make_user(email="none@example.com")
    await make_application(none)
    inbound = await _store(db, build_email("none@example.com", "proof@inbound.example.org", "Income", attachments=()))
    await process_inbound_email(db, inbound)
    assert inbound.bounce_reason == "no_attachments"


@pytest.mark.asyncio
async def test_proof_email_rate_limited(db, make_user, make_application):
    await policy_service.set(db, "proof_submission_rate_limit_email", 1)
    constituent = await make_user(email="busy@example.com")
    await make_application(constituent)
    first = await _store(db, build_email("busy@example.com", "proof@inbound.example.org", "Income"))
    second = await _store(db, build_email("busy@example.com", "proof@inbound.example.org", "Income again"))
    await process_inbound_email(db, first)
    await process_inbound_email(db, second)
    assert first.status == InboundEmailStatus.DELIVERED
    assert second.bounce_reason == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_provider_certification_is_recorded(db, make_user, make_application):
    application = await make_application(
        await make_user(), medical_certification_status=MedicalCertificationStatus.REQUESTED
    )
    raw = build_email(
        "Dr Smith <dr.smith@clinic.example.com>",
        f"medical-cert+{application.id}@inbound.example.org",
        "Signed certification",
        attachments=(("cert.png", "image", "png", b"\x89PNG" + b"0" * 100),),
    )
    inbound = await _store(db, raw)
    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.DELIVERED
    assert application.medical_certification_status == MedicalCertificationStatus.RECEIVED
    assert application.medical_certification_key.startswith(f"certifications/{application.id}/")


@pytest.mark.asyncio
async def test_certification_from_unknown_provider_bounces(db, make_user, make_application):
    application = await make_application(
        await make_user(), medical_certification_status=MedicalCertificationStatus.REQUESTED
    )
    raw = build_email("quack@example.com", f"medical-cert+{application.id}@inbound.example.org", "Signed")
    inbound = await _store(db, raw)
    await process_inbound_email(db, inbound)
    assert inbound.bounce_reason == "provider_not_found"
    assert application.medical_certification_status == MedicalCertificationStatus.REQUESTED


@pytest.mark.asyncio
async def test_certification_without_pending_request_bounces(db, make_user, make_application):
    application = await make_application(await make_user())
    raw = build_email("dr.smith@clinic.example.com", f"medical-cert+{application.id}@inbound.example.org", "Signed")
    inbound = await _store(db, raw)
    await process_inbound_email(db, inbound)
    assert inbound.bounce_reason == "invalid_certification_request"


@pytest.mark.asyncio
async def test_unroutable_email_bounces(db):
    inbound = await _store(db, build_email("someone@example.com", "info@inbound.example.org", "Hello"))
    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.BOUNCED
    assert inbound.bounce_reason == "unroutable"
    assert inbound.mailbox is None


@pytest.mark.asyncio
async def test_proof_email_leaves_approved_certification_alone(db, make_user, make_application):
    constituent = await make_user(email="done@example.com")
    application = await make_application(
        constituent,
        medical_certification_status=MedicalCertificationStatus.APPROVED,
        medical_certification_key="certifications/1/approved.pdf",
    )
    raw = build_email("done@example.com", "proof@inbound.example.org", "Documents", body="Signed by my doctor.")
    inbound = await _store(db, raw)

    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.DELIVERED
    assert application.medical_certification_status == MedicalCertificationStatus.APPROVED
    assert application.medical_certification_key == "certifications/1/approved.pdf"
    assert application.income_proof_key.startswith(f"proofs/{application.id}/income/")


@pytest.mark.asyncio
async def test_proof_email_records_requested_certification(db, make_user, make_application):
    constituent = await make_user(email="waiting@example.com")
    application = await make_application(
        constituent, medical_certification_status=MedicalCertificationStatus.REQUESTED
    )
    raw = build_email("waiting@example.com", "proof@inbound.example.org", "Form", body="From my doctor.")
    inbound = await _store(db, raw)

    await process_inbound_email(db, inbound)
    assert application.medical_certification_status == MedicalCertificationStatus.RECEIVED
    assert application.medical_certification_key.startswith(f"certifications/{application.id}/")
    assert application.income_proof_key is None


@pytest.mark.asyncio
async def test_certification_only_recorded_while_awaited(db, make_user, make_application):
    application = await make_application(
        await make_user(), medical_certification_status=MedicalCertificationStatus.APPROVED
    )
    with pytest.raises(ApplicationError, match="No medical certification is awaited"):
        await application_service.record_medical_certification(db, application, "certifications/x.pdf", None)
    assert application.medical_certification_key is None


@pytest.mark.asyncio
async def test_envelope_recipient_routes_mail_without_to_header(db, make_user, make_application):
    constituent = await make_user(email="bcc@example.com")
    application = await make_application(constituent)
    raw = build_email("bcc@example.com", None, "Income proof")
    assert ParsedEmail.from_raw(raw).recipients == []
    inbound = InboundEmail(
        message_id=ParsedEmail.from_raw(raw).message_id, raw_email=raw, recipient="proof@inbound.example.org"
    )
    db.add(inbound)
    await db.flush()

    await process_inbound_email(db, inbound)
    assert inbound.status == InboundEmailStatus.DELIVERED
    assert inbound.mailbox == "proof_submission"
    assert application.income_proof_key is not None
