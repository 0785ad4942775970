"""Application lifecycle.

Covers creating and submitting applications, administrator status changes,
the income threshold check, requesting and reviewing the medical provider's
disability certification, and auto-approval once every requirement is met.

Every status change writes an ``ApplicationStatusChange`` row plus an
``application_status_changed`` audit event.  Certification transitions use
the same table with ``change_type="medical_certification"``.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.models.enums import (
    ACTIVE_APPLICATION_STATUSES,
    AWAITING_CERTIFICATION_STATUSES,
    ApplicationStatus,
    ApplicationSubmissionMethod,
    MedicalCertificationStatus,
    NotificationChannel,
    ProofStatus,
    ReviewStatus,
    UserType,
)
from voucher_portal.models.schemas import ApplicationBase
from voucher_portal.models.tables import Application, ApplicationStatusChange, User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.guardian_service import guardian_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.policy_service import policy_service
from voucher_portal.services.voucher_service import VoucherError, voucher_service
from voucher_portal.utils.helpers import add_months, money, utcnow

logger = logging.getLogger(__name__)


class ApplicationError(Exception):
    pass


def _value(v) -> Optional[str]:
    return getattr(v, "value", v)


async def income_threshold(db: AsyncSession, household_size: int) -> Decimal:
    """``fpl_{size}_person * fpl_modifier_percentage / 100``; sizes above 8 use the 8-person base."""
    size = max(1, min(int(household_size), 8))
    base = await policy_service.get_int(db, f"fpl_{size}_person", 0)
    modifier = await policy_service.get_int(db, "fpl_modifier_percentage", 400)
    return money(Decimal(base) * Decimal(modifier) / Decimal(100))


async def income_within_threshold(db: AsyncSession, household_size: int, annual_income) -> bool:
    return money(annual_income) <= await income_threshold(db, household_size)


def validate_for_submission(application: Application, constituent: User) -> List[str]:
    errors = []
    if not application.household_size or application.household_size < 1:
        errors.append("Household size must be at least 1")
    if application.annual_income is None:
        errors.append("Annual income is required")
    if not application.maryland_resident:
        errors.append("Only Maryland residents are eligible")
    if not application.medical_provider_name:
        errors.append("Medical provider name is required")
    if not application.medical_provider_phone:
        errors.append("Medical provider phone is required")
    if not application.medical_provider_email:
        errors.append("Medical provider email is required")
    if not constituent.disabilities:
        errors.append("At least one disability must be selected")
    return errors


class ApplicationService:
    async def get(self, db: AsyncSession, application_id: int) -> Optional[Application]:
        return await db.get(Application, application_id)

    async def list_for_user(self, db: AsyncSession, user: User) -> List[Application]:
        result = await db.execute(
            select(Application).where(Application.user_id == user.id).order_by(Application.created_at.desc())
        )
        return list(result.scalars().all())

    async def list(
        self, db: AsyncSession, status: Optional[ApplicationStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[Application]:
        stmt = select(Application).order_by(Application.created_at.desc())
        if status is not None:
            stmt = stmt.where(Application.status == status)
        result = await db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def check_waiting_period(self, db: AsyncSession, constituent: User, exclude_id: Optional[int] = None) -> None:
        years = await policy_service.get_int(db, "waiting_period_years", 3)
        stmt = select(Application).where(
            Application.user_id == constituent.id,
            Application.status != ApplicationStatus.DRAFT,
        )
        if exclude_id is not None:
            stmt = stmt.where(Application.id != exclude_id)
        now = utcnow()
        for previous in (await db.execute(stmt)).scalars().all():
            submitted = previous.application_date or previous.created_at
            if previous.status in ACTIVE_APPLICATION_STATUSES:
                raise ApplicationError("You already have an application in progress")
            if add_months(submitted, 12 * years) > now:
                raise ApplicationError(f"You must wait {years} years between applications")

    async def create(
        self,
        db: AsyncSession,
        constituent: User,
        data: ApplicationBase,
        submit: bool = False,
        actor: Optional[User] = None,
        submission_method: ApplicationSubmissionMethod = ApplicationSubmissionMethod.ONLINE,
    ) -> Application:
        if constituent.type != UserType.CONSTITUENT:
            raise ApplicationError("Applications can only be created for constituents")
        fields = data.model_dump(exclude={"submit", "constituent_id", "submission_method"})
        application = Application(
            user_id=constituent.id,
            managing_guardian_id=await self.managing_guardian_id(db, constituent, actor),
            status=ApplicationStatus.DRAFT,
            submission_method=submission_method,
            **fields,
        )
        db.add(application)
        await db.flush()
        await audit_service.log_safely(
            db,
            action="application_created",
            actor=actor or constituent,
            auditable=application,
            metadata={"submission_method": submission_method.value, "draft": not submit},
        )
        if submit:
            await self.submit(db, application, actor or constituent)
        return application

    async def managing_guardian_id(self, db: AsyncSession, constituent: User, actor: Optional[User]) -> Optional[int]:
        """The guardian acting for ``constituent``, preferring ``actor``."""
        if actor is not None and await guardian_service.relationship(db, actor.id, constituent.id) is not None:
            return actor.id
        guardian = await guardian_service.guardian_for_contact(db, constituent)
        return guardian.id if guardian is not None else None

    async def update_draft(self, db: AsyncSession, application: Application, data: ApplicationBase) -> Application:
        if application.status != ApplicationStatus.DRAFT:
            raise ApplicationError("Only draft applications can be edited")
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(application, field, value)
        await db.flush()
        return application

    async def submit(self, db: AsyncSession, application: Application, actor: User) -> Application:
        if application.status != ApplicationStatus.DRAFT:
            raise ApplicationError("Application has already been submitted")
        constituent = await db.get(User, application.user_id)
        errors = validate_for_submission(application, constituent)
        if errors:
            raise ApplicationError("; ".join(errors))
        await self.check_waiting_period(db, constituent, exclude_id=application.id)

        application.application_date = utcnow()
        await self.change_status(db, application, ApplicationStatus.IN_PROGRESS, actor, notify=False)
        await notification_service.create_and_deliver(
            db,
            "application_submitted",
            constituent,
            actor=actor,
            notifiable=application,
            metadata={"application_id": application.id},
        )
        await self.enforce_income_threshold(db, application, actor)
        return application

    async def enforce_income_threshold(self, db: AsyncSession, application: Application, actor: Optional[User]) -> bool:
        """Reject an application whose income is over the limit; returns True when within it."""
        if application.household_size is None or application.annual_income is None:
            return True
        threshold = await income_threshold(db, application.household_size)
        if money(application.annual_income) <= threshold:
            return True

        constituent = await db.get(User, application.user_id)
        await self.change_status(
            db, application, ApplicationStatus.REJECTED, actor, notes="Income exceeds program threshold", notify=False
        )
        await notification_service.create_and_deliver(
            db,
            "income_threshold_exceeded",
            constituent,
            actor=actor,
            notifiable=application,
            metadata={
                "application_id": application.id,
                "household_size": application.household_size,
                "annual_income": f"${money(application.annual_income):,.2f}",
                "threshold": f"${threshold:,.2f}",
            },
        )
        return False

    async def change_status(
        self,
        db: AsyncSession,
        application: Application,
        new_status: ApplicationStatus,
        actor: Optional[User],
        notes: Optional[str] = None,
        notify: bool = True,
    ) -> Application:
        new_status = ApplicationStatus(new_status)
        old_status = application.status
        if old_status == new_status:
            return application
        application.status = new_status
        db.add(
            ApplicationStatusChange(
                application_id=application.id,
                user_id=actor.id if actor else None,
                change_type="status",
                from_status=_value(old_status),
                to_status=new_status.value,
                notes=notes,
            )
        )
        await db.flush()
        logger.info("[application] %s status %s -> %s", application.id, _value(old_status), new_status.value)
        await audit_service.log_safely(
            db,
            action="application_status_changed",
            actor=actor,
            auditable=application,
            metadata={"from_status": _value(old_status), "to_status": new_status.value, "notes": notes},
        )
        if notify:
            constituent = await db.get(User, application.user_id)
            action = "application_approved" if new_status == ApplicationStatus.APPROVED else "application_status_changed"
            await notification_service.create_and_deliver(
                db,
                action,
                constituent,
                actor=actor,
                notifiable=application,
                metadata={
                    "application_id": application.id,
                    "from_status": _value(old_status),
                    "to_status": new_status.value,
                    "notes": notes,
                },
            )
        return application

    # ------------------------------------------------------------------
    # Medical certification

    async def _certification_change(
        self,
        db: AsyncSession,
        application: Application,
        new_status: MedicalCertificationStatus,
        actor: Optional[User],
        notes: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        old_status = application.medical_certification_status
        application.medical_certification_status = new_status
        db.add(
            ApplicationStatusChange(
                application_id=application.id,
                user_id=actor.id if actor else None,
                change_type="medical_certification",
                from_status=_value(old_status),
                to_status=new_status.value,
                notes=notes,
                details=details or {},
            )
        )
        await db.flush()

    async def request_medical_certification(self, db: AsyncSession, application: Application, actor: Optional[User]) -> Application:
        if not application.medical_provider_email:
            raise ApplicationError("Medical provider email is required to request certification")
        if application.medical_certification_status in (
            MedicalCertificationStatus.RECEIVED,
            MedicalCertificationStatus.APPROVED,
        ):
            raise ApplicationError("Medical certification has already been received")

        application.medical_certification_requested_at = utcnow()
        application.medical_certification_request_count = (application.medical_certification_request_count or 0) + 1
        await self._certification_change(
            db,
            application,
            MedicalCertificationStatus.REQUESTED,
            actor,
            details={"request_count": application.medical_certification_request_count},
        )
        await audit_service.log_safely(
            db,
            action="medical_certification_requested",
            actor=actor,
            auditable=application,
            metadata={
                "provider_email": application.medical_provider_email,
                "request_count": application.medical_certification_request_count,
            },
        )

        constituent = await db.get(User, application.user_id)
        context = {
            "application_id": application.id,
            "provider_name": application.medical_provider_name,
            "constituent_name": constituent.full_name,
            "certification_email": f"medical-cert+{application.id}@{settings.INBOUND_EMAIL_DOMAIN}",
        }
        await notification_service.create_and_deliver(
            db,
            "medical_certification_requested",
            None,
            actor=actor,
            notifiable=application,
            metadata={**context, "to_email": application.medical_provider_email},
            channel=NotificationChannel.EMAIL,
        )
        if application.medical_provider_fax:
            await notification_service.create_and_deliver(
                db,
                "medical_certification_requested",
                None,
                actor=actor,
                notifiable=application,
                metadata={**context, "to_fax": application.medical_provider_fax},
                channel=NotificationChannel.FAX,
            )
        return application

    async def maybe_request_medical_certification(self, db: AsyncSession, application: Application, actor: Optional[User]) -> bool:
        if (
            application.income_proof_status == ProofStatus.APPROVED
            and application.residency_proof_status == ProofStatus.APPROVED
            and application.medical_certification_status == MedicalCertificationStatus.NOT_REQUESTED
            and application.medical_provider_email
        ):
            await self.request_medical_certification(db, application, actor)
            return True
        return False

    async def record_medical_certification(
        self,
        db: AsyncSession,
        application: Application,
        document_key: str,
        actor: Optional[User],
        submission_method: str = "email",
    ) -> Application:
        if application.medical_certification_status not in AWAITING_CERTIFICATION_STATUSES:
            raise ApplicationError("No medical certification is awaited for this application")
        application.medical_certification_key = document_key
        await self._certification_change(
            db,
            application,
            MedicalCertificationStatus.RECEIVED,
            actor,
            details={"submission_method": submission_method},
        )
        await audit_service.log_safely(
            db,
            action="medical_certification_received",
            actor=actor,
            auditable=application,
            metadata={"submission_method": submission_method},
        )
        constituent = await db.get(User, application.user_id)
        await notification_service.create_and_deliver(
            db,
            "medical_certification_received",
            constituent,
            actor=actor,
            notifiable=application,
            metadata={"application_id": application.id},
        )
        return application

    async def review_medical_certification(
        self,
        db: AsyncSession,
        application: Application,
        admin: User,
        status: ReviewStatus,
        rejection_reason: Optional[str] = None,
    ) -> Application:
        if not admin.is_admin:
            raise ApplicationError("Only administrators can review medical certifications")
        if application.medical_certification_status not in (
            MedicalCertificationStatus.RECEIVED,
            MedicalCertificationStatus.REQUESTED,
        ):
            raise ApplicationError("No medical certification is awaiting review")
        status = ReviewStatus(status)
        if status == ReviewStatus.REJECTED and not (rejection_reason or "").strip():
            raise ApplicationError("Rejection reason is required")

        constituent = await db.get(User, application.user_id)
        if status == ReviewStatus.APPROVED:
            application.medical_certification_rejection_reason = None
            await self._certification_change(db, application, MedicalCertificationStatus.APPROVED, admin)
            await audit_service.log_safely(db, action="medical_certification_approved", actor=admin, auditable=application)
            await notification_service.create_and_deliver(
                db,
                "medical_certification_approved",
                constituent,
                actor=admin,
                notifiable=application,
                metadata={"application_id": application.id},
            )
            await self.check_auto_approval(db, application, admin, trigger="medical_certification_approved")
        else:
            application.medical_certification_rejection_reason = rejection_reason
            await self._certification_change(
                db, application, MedicalCertificationStatus.REJECTED, admin, notes=rejection_reason
            )
            await audit_service.log_safely(
                db,
                action="medical_certification_rejected",
                actor=admin,
                auditable=application,
                metadata={"rejection_reason": rejection_reason},
            )
            await notification_service.create_and_deliver(
                db,
                "medical_certification_rejected",
                constituent,
                actor=admin,
                notifiable=application,
                metadata={"application_id": application.id, "rejection_reason": rejection_reason},
            )
        return application

    # ------------------------------------------------------------------
    # Approval

    async def check_auto_approval(self, db: AsyncSession, application: Application, actor: Optional[User], trigger: str) -> bool:
        if application.status == ApplicationStatus.APPROVED:
            return False
        if not (
            application.income_proof_status == ProofStatus.APPROVED
            and application.residency_proof_status == ProofStatus.APPROVED
            and application.medical_certification_status == MedicalCertificationStatus.APPROVED
        ):
            return False

        await self.change_status(db, application, ApplicationStatus.APPROVED, actor, notes="All requirements approved")
        await audit_service.log_safely(
            db,
            action="application_auto_approved",
            actor=actor,
            auditable=application,
            metadata={"trigger": trigger, "timestamp": utcnow().isoformat()},
        )
        logger.info("[application] %s auto-approved (%s)", application.id, trigger)
        try:
            await voucher_service.issue(db, application, actor)
        except VoucherError as e:
            logger.warning("[application] %s approved but voucher not issued: %s", application.id, e)
        return True


application_service = ApplicationService()

__all__ = [
    "ApplicationService",
    "application_service",
    "ApplicationError",
    "income_threshold",
    "income_within_threshold",
    "validate_for_submission",
]
