"""Income and residency proofs emailed by constituents to ``proof@``."""

from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy import select

from voucher_portal.core.observability import sentry_metric_inc
from voucher_portal.models.enums import (
    ACTIVE_APPLICATION_STATUSES,
    AWAITING_CERTIFICATION_STATUSES,
    NotificationChannel,
    ProofSubmissionMethod,
    ProofType,
)
from voucher_portal.models.tables import Application, User
from voucher_portal.services.application_service import application_service
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.policy_service import policy_service
from voucher_portal.services.proof_attachment_service import (
    ProofAttachmentValidator,
    ProofFile,
    ProofValidationError,
    proof_attachment_service,
)
from voucher_portal.services.rate_limit import RateLimit, RateLimitExceeded
from voucher_portal.services.storage_service import delete_after_commit, discard_on_rollback, get_storage
from voucher_portal.services.user_service import find_by_email, get_system_user
from voucher_portal.utils.helpers import utcnow
from .base import Mailbox

logger = logging.getLogger(__name__)

MEDICAL_CERTIFICATION = "medical_certification"

_MEDICAL_WORDS = re.compile(r"\b(medical|certification|doctor|provider|health)\b")
_RESIDENCY_WORDS = re.compile(r"\b(residency|address)\b")
_INCOME_WORD = re.compile(r"\bincome\b")
_SUBJECT_APP_ID = re.compile(r"#(\d+)|\bID:?\s*(\d+)")
_FILENAME_SEPARATORS = re.compile(r"[_\-.]+")


def _classify_text(text: str, allow_medical: bool) -> Optional[str]:
    if allow_medical and _MEDICAL_WORDS.search(text):
        return MEDICAL_CERTIFICATION
    if _RESIDENCY_WORDS.search(text) and not _INCOME_WORD.search(text):
        return ProofType.RESIDENCY.value
    if _INCOME_WORD.search(text):
        return ProofType.INCOME.value
    return None


def classify_proof(subject: str, body: str, recipients=(), filename: str = "", allow_medical: bool = True) -> str:
    """Pick the proof type an emailed document is meant for.

    The attachment's filename wins over the message text, so one email can
    carry several kinds of proof.  With ``allow_medical`` false a medical
    document is filed as residency or income instead.
    """
    name = _FILENAME_SEPARATORS.sub(" ", filename.lower())
    by_name = _classify_text(name, allow_medical) if name else None
    if by_name is not None:
        return by_name
    text = f"{subject} {body}".lower()
    if allow_medical and (_MEDICAL_WORDS.search(text) or any("medical-cert" in r for r in recipients)):
        return MEDICAL_CERTIFICATION
    if _RESIDENCY_WORDS.search(text) and not _INCOME_WORD.search(text):
        return ProofType.RESIDENCY.value
    return ProofType.INCOME.value


class ProofSubmissionMailbox(Mailbox):
    name = "proof_submission"
    before_processing = (
        "ensure_constituent",
        "ensure_active_application",
        "check_rate_limit",
        "check_max_rejections",
        "validate_attachments",
    )

    _constituent: Optional[User] = None
    _application: Optional[Application] = None

    async def load(self) -> None:
        """Resolve sender and application.

        A medical provider replying about an application is treated as
        submitting on the constituent's behalf.
        """
        db, sender = self.db, self.mail.sender
        self._constituent = await find_by_email(db, sender)
        if self._constituent is not None:
            result = await db.execute(
                select(Application)
                .where(Application.user_id == self._constituent.id)
                .order_by(Application.created_at.desc(), Application.id.desc())
                .limit(1)
            )
            self._application = result.scalar_one_or_none()
            return
        if not sender:
            return
        app = None
        match = _SUBJECT_APP_ID.search(self.mail.subject or "")
        if match:
            candidate = await db.get(Application, int(match.group(1) or match.group(2)))
            if candidate is not None and (candidate.medical_provider_email or "").lower() == sender:
                app = candidate
        if app is None:
            result = await db.execute(
                select(Application)
                .where(Application.medical_provider_email == sender)
                .order_by(Application.created_at.desc(), Application.id.desc())
                .limit(1)
            )
            app = result.scalar_one_or_none()
        if app is not None:
            self._application = app
            self._constituent = await db.get(User, app.user_id)

    async def ensure_constituent(self) -> None:
        await self.load()
        if self._constituent is None:
            await self.bounce("constituent_not_found", "Email sender not recognized as a constituent")

    async def ensure_active_application(self) -> None:
        if self._application is None or self._application.status not in ACTIVE_APPLICATION_STATUSES:
            await self.bounce("inactive_application", "No active application found for this constituent")

    async def check_rate_limit(self) -> None:
        try:
            await RateLimit.check(self.db, "proof_submission", self._constituent.id, "email")
        except RateLimitExceeded:
            await self.bounce(
                "rate_limit_exceeded",
                "You have exceeded the maximum number of proof submissions allowed per hour",
            )

    async def check_max_rejections(self) -> None:
        max_rejections = await policy_service.get_int(self.db, "max_proof_rejections", 3)
        if (self._application.total_rejections or 0) >= max_rejections:
            await self.bounce("max_rejections_reached", "Maximum number of proof submission attempts reached")

    async def validate_attachments(self) -> None:
        if not self.mail.attachments:
            await self.bounce("no_attachments", "No attachments found in email")
        for attachment in self.mail.attachments:
            try:
                ProofAttachmentValidator.validate(attachment)
            except ProofValidationError as e:
                await self.bounce("invalid_attachment", f"Invalid attachment: {e}")

    async def process(self) -> None:
        db, application, constituent = self.db, self._application, self._constituent
        context = {
            "application_id": application.id,
            "inbound_email_id": self.inbound_email.id,
            "email_subject": self.mail.subject,
            "email_from": self.mail.sender,
        }
        await audit_service.log_safely(
            db, action="proof_submission_received", actor=constituent, auditable=application, metadata=context
        )
        for attachment in self.mail.attachments:
            awaiting_certification = application.medical_certification_status in AWAITING_CERTIFICATION_STATUSES
            proof_type = classify_proof(
                self.mail.subject,
                self.mail.body,
                self.mail.recipients,
                filename=attachment.filename or "",
                allow_medical=awaiting_certification,
            )
            if proof_type == MEDICAL_CERTIFICATION:
                await self._attach_certification(attachment)
                continue
            await proof_attachment_service.attach_proof(
                db,
                application,
                ProofType(proof_type),
                attachment,
                ProofSubmissionMethod.EMAIL,
                actor=constituent,
                metadata={
                    "ip_address": "0.0.0.0",
                    "email_subject": self.mail.subject,
                    "email_from": self.mail.sender,
                    "inbound_email_id": self.inbound_email.id,
                },
            )
        await audit_service.log_safely(
            db,
            action="proof_submission_processed",
            actor=constituent,
            auditable=application,
            metadata={"application_id": application.id, "inbound_email_id": self.inbound_email.id},
        )
        sentry_metric_inc("mailbox.proof_submission.processed", value=len(self.mail.attachments))

    async def _attach_certification(self, attachment: ProofFile) -> None:
        key = get_storage().save_bytes(
            attachment.data,
            f"certifications/{self._application.id}",
            attachment.filename,
            attachment.content_type,
        )
        discard_on_rollback(self.db, key)
        previous = self._application.medical_certification_key
        await application_service.record_medical_certification(
            self.db, self._application, key, self._constituent, submission_method="email"
        )
        if previous != key:
            delete_after_commit(self.db, previous)

    async def record_bounce(self, error_type: str, message: str) -> None:
        db = self.db
        actor = self._constituent or await get_system_user(db)
        await audit_service.log_safely(
            db,
            action=f"proof_submission_{error_type}",
            actor=actor,
            auditable=self._application,
            metadata={
                "application_id": self._application.id if self._application else None,
                "error": message,
                "error_type": error_type,
                "inbound_email_id": self.inbound_email.id,
                "sender_email": self.mail.sender,
                "email_subject": self.mail.subject,
                "bounce_timestamp": utcnow().isoformat(),
            },
        )
        if not self.mail.sender:
            return
        await notification_service.create_and_deliver(
            db,
            "proof_submission_error",
            self._constituent,
            notifiable=self._application,
            metadata={
                "to_email": self.mail.sender,
                "error_type": error_type,
                "error_message": f"Email processing failed: {message}",
            },
            channel=NotificationChannel.EMAIL,
        )
        sentry_metric_inc("mailbox.proof_submission.bounced", tags={"error_type": error_type})


__all__ = ["ProofSubmissionMailbox", "classify_proof", "MEDICAL_CERTIFICATION"]
