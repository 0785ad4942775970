"""Administrator review of income and residency proofs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.database import lock_row
from voucher_portal.core.observability import sentry_capture
from voucher_portal.models.enums import ApplicationStatus, ProofStatus, ProofType, ReviewStatus
from voucher_portal.models.tables import Application, ProofReview, User
from voucher_portal.services.application_service import application_service
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.policy_service import policy_service
from voucher_portal.services.storage_service import delete_after_commit
from voucher_portal.utils.helpers import add_months, utcnow

logger = logging.getLogger(__name__)

PROOF_TYPES = ("income", "residency")
REVIEW_STATUSES = ("approved", "rejected")


class ProofReviewError(Exception):
    pass


@dataclass
class ServiceResult:
    success: bool
    message: str
    review: Optional[ProofReview] = None


class ProofReviewService:
    """``await ProofReviewService(db, application, admin, params).call()``.

    ``params`` holds ``proof_type``, ``status`` and optionally
    ``rejection_reason`` and ``notes``.  Parameter problems and review rule
    violations come back as a failed result rather than an exception.
    """

    def __init__(self, db: AsyncSession, application: Application, admin: User, params: Mapping[str, Any]) -> None:
        self.db = db
        self.application = application
        self.admin = admin
        self.params = params
        self.proof_type = str(params.get("proof_type") or "").strip()
        self.status = str(params.get("status") or "").strip()

    def validate_params(self) -> Optional[str]:
        if not self.proof_type or not self.status:
            return "Proof type and status are required"
        if self.proof_type not in PROOF_TYPES:
            return "Invalid proof type"
        if self.status not in REVIEW_STATUSES:
            return "Invalid status"
        return None

    async def call(self) -> ServiceResult:
        error = self.validate_params()
        if error:
            return ServiceResult(False, error)
        logger.info(
            "[proof_review] application %s %s -> %s by %s",
            self.application.id, self.proof_type, self.status, self.admin.id,
        )
        try:
            review = await self.review(
                ProofType(self.proof_type),
                ReviewStatus(self.status),
                self.params.get("rejection_reason"),
                self.params.get("notes"),
            )
        except ProofReviewError as e:
            return ServiceResult(False, f"Proof review failed: {e}")
        except Exception as e:
            logger.error("[proof_review] application %s failed: %s", self.application.id, e)
            sentry_capture(e)
            return ServiceResult(False, f"Proof review failed: {e}")
        return ServiceResult(True, f"{self.proof_type.capitalize()} proof {self.status} successfully.", review)

    async def review(
        self,
        proof_type: ProofType,
        status: ReviewStatus,
        rejection_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ProofReview:
        db, application, admin = self.db, self.application, self.admin
        if not admin.is_admin:
            raise ProofReviewError("Reviewer must be an administrator")
        application = self.application = await lock_row(db, Application, application.id)
        if application.status == ApplicationStatus.ARCHIVED:
            raise ProofReviewError("Archived applications cannot be reviewed")
        if status == ReviewStatus.REJECTED and not (rejection_reason or "").strip():
            raise ProofReviewError("Rejection reason is required")
        if status == ReviewStatus.APPROVED and not application.proof_key(proof_type):
            raise ProofReviewError(f"{proof_type.value.capitalize()} proof must be attached to approve")

        review = ProofReview(
            application_id=application.id,
            admin_id=admin.id,
            proof_type=proof_type,
            status=status,
            rejection_reason=rejection_reason,
            notes=notes,
            reviewed_at=utcnow(),
        )
        db.add(review)
        application.set_proof_status(
            proof_type, ProofStatus.APPROVED if status == ReviewStatus.APPROVED else ProofStatus.REJECTED
        )
        if application.income_proof_status != ProofStatus.NOT_REVIEWED and application.residency_proof_status != ProofStatus.NOT_REVIEWED:
            application.needs_review_since = None
        await db.flush()

        await audit_service.log_safely(
            db,
            action=f"{proof_type.value}_proof_{status.value}",
            actor=admin,
            auditable=application,
            metadata={"proof_type": proof_type.value, "rejection_reason": rejection_reason, "review_id": review.id},
        )
        constituent = await db.get(User, application.user_id)

        if status == ReviewStatus.REJECTED:
            key = application.proof_key(proof_type)
            application.set_proof_key(proof_type, None)
            await db.flush()
            delete_after_commit(db, key)
            await self._handle_rejection(constituent, proof_type, rejection_reason)
        else:
            await notification_service.create_and_deliver(
                db,
                "proof_approved",
                constituent,
                actor=admin,
                notifiable=application,
                metadata={"application_id": application.id, "proof_type": proof_type.value},
            )
            await application_service.maybe_request_medical_certification(db, application, admin)
            await application_service.check_auto_approval(db, application, admin, trigger=f"proof_{proof_type.value}_approved")
        return review

    async def _handle_rejection(self, constituent: User, proof_type: ProofType, rejection_reason: Optional[str]) -> None:
        db, application, admin = self.db, self.application, self.admin
        application.total_rejections = (application.total_rejections or 0) + 1
        await db.flush()
        max_rejections = await policy_service.get_int(db, "max_proof_rejections", 3)
        remaining = max(0, max_rejections - application.total_rejections)

        await notification_service.create_and_deliver(
            db,
            "proof_rejected",
            constituent,
            actor=admin,
            notifiable=application,
            metadata={
                "application_id": application.id,
                "proof_type": proof_type.value,
                "rejection_reason": rejection_reason,
                "remaining_attempts": remaining,
            },
        )
        if application.total_rejections >= max_rejections:
            await notification_service.notify_admins(
                db,
                "max_rejections_warning",
                actor=admin,
                notifiable=application,
                metadata={"application_id": application.id, "total_rejections": application.total_rejections},
            )
        if application.total_rejections > max_rejections:
            await application_service.change_status(
                db, application, ApplicationStatus.ARCHIVED, admin, notes="Maximum proof rejections reached", notify=False
            )
            waiting_years = await policy_service.get_int(db, "waiting_period_years", 3)
            await notification_service.create_and_deliver(
                db,
                "max_rejections_reached",
                constituent,
                actor=admin,
                notifiable=application,
                metadata={
                    "application_id": application.id,
                    "reapply_date": add_months(utcnow(), 12 * waiting_years).strftime("%B %d, %Y"),
                },
            )


__all__ = ["ProofReviewService", "ProofReviewError", "ServiceResult"]
