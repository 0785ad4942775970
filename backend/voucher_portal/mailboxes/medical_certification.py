"""Signed disability certifications emailed by medical providers."""

from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy import func, select

from voucher_portal.core.observability import sentry_metric_inc
from voucher_portal.models.enums import AWAITING_CERTIFICATION_STATUSES, NotificationChannel, UserType
from voucher_portal.models.tables import Application, User
from voucher_portal.services.application_service import application_service
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.storage_service import delete_after_commit, discard_on_rollback, get_storage
from voucher_portal.services.user_service import get_system_user
from .base import Mailbox

logger = logging.getLogger(__name__)

ALLOWED_TYPES = ("application/pdf", "image/jpeg", "image/png", "image/gif")
MAX_SIZE = 10 * 1024 * 1024

_APPLICATION_ID = re.compile(r"Application #?(\d+)", re.IGNORECASE)


def extract_application_id(subject: str, body: str, recipients) -> Optional[int]:
    for text in (subject or "", body or ""):
        match = _APPLICATION_ID.search(text)
        if match:
            return int(match.group(1))
    for address in recipients:
        local = address.split("@", 1)[0]
        if "+" in local:
            tag = local.split("+", 1)[1]
            if tag.isdigit():
                return int(tag)
    return None


class MedicalCertificationMailbox(Mailbox):
    name = "medical_certification"
    before_processing = ("ensure_medical_provider", "ensure_valid_certification_request", "validate_attachments")

    _application: Optional[Application] = None
    _provider: Optional[User] = None

    async def load(self) -> None:
        application_id = extract_application_id(self.mail.subject, self.mail.body, self.mail.recipients)
        if application_id is not None:
            self._application = await self.db.get(Application, application_id)

    async def ensure_medical_provider(self) -> None:
        """The sender must be a registered provider or the provider named on the application."""
        await self.load()
        sender = self.mail.sender
        if sender:
            result = await self.db.execute(
                select(User).where(User.type == UserType.MEDICAL_PROVIDER, func.lower(User.email) == sender)
            )
            self._provider = result.scalar_one_or_none()
        named = bool(
            sender and self._application is not None and (self._application.medical_provider_email or "").lower() == sender
        )
        if self._provider is None and not named:
            await self.bounce("provider_not_found", "Email sender not recognized as a registered medical provider")

    async def ensure_valid_certification_request(self) -> None:
        if (
            self._application is None
            or self._application.medical_certification_status not in AWAITING_CERTIFICATION_STATUSES
        ):
            await self.bounce("invalid_certification_request", "No pending certification request found for this provider")

    async def validate_attachments(self) -> None:
        if not self.mail.attachments:
            await self.bounce("no_attachments", "No attachments found in email")
        for attachment in self.mail.attachments:
            if attachment.size > MAX_SIZE:
                await self.bounce("invalid_attachment", "Invalid attachment: File size exceeds 10MB limit")
            if attachment.content_type not in ALLOWED_TYPES:
                await self.bounce(
                    "invalid_attachment",
                    "Invalid attachment: File type not allowed. Allowed types: PDF, JPEG, PNG, GIF",
                )

    async def process(self) -> None:
        storage = get_storage()
        keys = [
            storage.save_bytes(
                attachment.data, f"certifications/{self._application.id}", attachment.filename, attachment.content_type
            )
            for attachment in self.mail.attachments
        ]
        for saved in keys:
            discard_on_rollback(self.db, saved)
        key = keys[-1]
        previous = self._application.medical_certification_key
        await application_service.record_medical_certification(
            self.db, self._application, key, self._provider, submission_method="email"
        )
        # Only the last attachment is kept on the application.
        for stale in keys[:-1]:
            delete_after_commit(self.db, stale)
        if previous != key:
            delete_after_commit(self.db, previous)
        logger.info(
            "[mailbox] certification for application %s received from %s",
            self._application.id, self.mail.sender,
        )
        sentry_metric_inc("mailbox.medical_certification.processed")

    async def record_bounce(self, error_type: str, message: str) -> None:
        db = self.db
        actor = None
        if self._application is not None:
            actor = await db.get(User, self._application.user_id)
        await audit_service.log_safely(
            db,
            action=f"medical_certification_{error_type}",
            actor=actor or await get_system_user(db),
            auditable=self._application,
            metadata={
                "application_id": self._application.id if self._application else None,
                "medical_provider_id": self._provider.id if self._provider else None,
                "error": message,
                "inbound_email_id": self.inbound_email.id,
            },
        )
        if self.mail.sender:
            await notification_service.create_and_deliver(
                db,
                "certification_submission_error",
                None,
                notifiable=self._application,
                metadata={
                    "to_email": self.mail.sender,
                    "application_id": self._application.id if self._application else "",
                    "error_type": error_type,
                    "error_message": message,
                },
                channel=NotificationChannel.EMAIL,
            )


__all__ = ["MedicalCertificationMailbox", "extract_application_id"]
