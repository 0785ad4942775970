"""Validation and storage of proof documents.

``ProofAttachmentService.attach_proof`` is the single path through which
income and residency documents reach an application, whether uploaded in
the constituent portal, emailed to the proof mailbox or scanned by staff.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.observability import sentry_metric_inc
from voucher_portal.models.enums import ApplicationStatus, ProofStatus, ProofSubmissionMethod, ProofType
from voucher_portal.models.tables import Application, User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.storage_service import delete_after_commit, discard_on_rollback, get_storage
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class ProofValidationError(Exception):
    """Rejected upload; ``error_type`` is a stable machine-readable code."""

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type


@dataclass
class ProofFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class ProofAttachmentValidator:
    ALLOWED_MIME_TYPES = ("application/pdf", "image/jpeg", "image/png")
    MAX_FILE_SIZE = 10 * 1024 * 1024
    MIN_FILE_SIZE = 1024
    PDF_ACTIVE_CONTENT = (b"/JS", b"/JavaScript", b"/Launch", b"/SubmitForm", b"/RichMedia")
    _SUSPICIOUS_EXTENSION = re.compile(r"\.(exe|sh|bat|cmd|vbs|js)$", re.IGNORECASE)

    @classmethod
    def validate(cls, attachment: Optional[ProofFile]) -> None:
        if attachment is None:
            raise ProofValidationError("no_attachment", "No attachment provided")
        if attachment.size < cls.MIN_FILE_SIZE:
            raise ProofValidationError("file_too_small", f"File is too small (minimum {cls.MIN_FILE_SIZE} bytes)")
        if attachment.size > cls.MAX_FILE_SIZE:
            raise ProofValidationError("file_too_large", f"File is too large (maximum {cls.MAX_FILE_SIZE} bytes)")
        if (attachment.content_type or "").lower() not in cls.ALLOWED_MIME_TYPES:
            raise ProofValidationError("invalid_type", "File type not allowed")
        if cls.suspicious_filename(attachment.filename) or (
            attachment.content_type.lower() == "application/pdf" and cls.pdf_has_active_content(attachment.data)
        ):
            raise ProofValidationError("suspicious_content", "File contains suspicious content")

    @classmethod
    def suspicious_filename(cls, filename: Optional[str]) -> bool:
        name = (filename or "").lower()
        return ".." in name or "/" in name or "\\" in name or bool(cls._SUSPICIOUS_EXTENSION.search(name))

    @classmethod
    def pdf_has_active_content(cls, data: bytes) -> bool:
        return any(marker in data for marker in cls.PDF_ACTIVE_CONTENT)


class ProofAttachmentService:
    async def attach_proof(
        self,
        db: AsyncSession,
        application: Application,
        proof_type: ProofType,
        file: ProofFile,
        submission_method: ProofSubmissionMethod,
        actor: Optional[User] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: ProofStatus = ProofStatus.NOT_REVIEWED,
    ) -> str:
        """Validate, store and link a proof document; returns its storage key.

        The previous document for the same proof type is removed once the new
        one is stored.  The caller commits.
        """
        started = time.monotonic()
        proof_type = ProofType(proof_type)
        if application.status == ApplicationStatus.ARCHIVED:
            raise ProofValidationError("inactive_application", "Archived applications cannot receive documents")
        ProofAttachmentValidator.validate(file)

        storage = get_storage()
        key = storage.save_bytes(
            file.data, f"proofs/{application.id}/{proof_type.value}", file.filename, file.content_type
        )
        previous = application.proof_key(proof_type)
        application.set_proof_key(proof_type, key)
        application.set_proof_status(proof_type, status)
        application.last_proof_submitted_at = utcnow()
        if status == ProofStatus.NOT_REVIEWED:
            application.needs_review_since = application.needs_review_since or utcnow()
        discard_on_rollback(db, key)
        await db.flush()
        if previous and previous != key:
            delete_after_commit(db, previous)

        duration_ms = int((time.monotonic() - started) * 1000)
        await audit_service.log_safely(
            db,
            action="proof_submitted",
            actor=actor,
            auditable=application,
            metadata={
                **(metadata or {}),
                "proof_type": proof_type.value,
                "submission_method": ProofSubmissionMethod(submission_method).value,
                "file_key": key,
                "blob_size": file.size,
                "content_type": file.content_type,
            },
        )
        logger.info(
            "[proof] %s proof attached to application %s via %s (%s bytes, %sms)",
            proof_type.value, application.id, ProofSubmissionMethod(submission_method).value, file.size, duration_ms,
        )
        sentry_metric_inc("proof_attachments.operations", tags={"proof_type": proof_type.value, "success": True})
        return key


proof_attachment_service = ProofAttachmentService()

__all__ = [
    "ProofAttachmentValidator",
    "ProofAttachmentService",
    "ProofFile",
    "ProofValidationError",
    "proof_attachment_service",
]
