"""Assistive technology evaluations performed by evaluators."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.enums import ApplicationStatus, EvaluationStatus, EvaluationType, UserType
from voucher_portal.models.schemas import EvaluationComplete
from voucher_portal.models.tables import Application, Evaluation, Product, User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class EvaluationError(Exception):
    pass


def _owned(evaluation: Evaluation, evaluator: User) -> None:
    if evaluation.evaluator_id != evaluator.id and not evaluator.is_admin:
        raise EvaluationError("Evaluation is assigned to another evaluator")


async def assign(
    db: AsyncSession,
    application: Application,
    evaluator: User,
    admin: User,
    evaluation_type: EvaluationType = EvaluationType.INITIAL,
) -> Evaluation:
    if evaluator.type != UserType.EVALUATOR:
        raise EvaluationError("Assignee must be an evaluator")
    if application.status in (ApplicationStatus.DRAFT, ApplicationStatus.ARCHIVED):
        raise EvaluationError("Evaluations require a submitted, active application")
    evaluation = Evaluation(
        evaluator_id=evaluator.id,
        constituent_id=application.user_id,
        application_id=application.id,
        status=EvaluationStatus.REQUESTED,
        evaluation_type=evaluation_type,
    )
    db.add(evaluation)
    await db.flush()
    constituent = await db.get(User, application.user_id)
    await audit_service.log_safely(
        db, action="evaluator_assigned", actor=admin, auditable=application, metadata={"evaluator_id": evaluator.id}
    )
    await notification_service.create_and_deliver(
        db,
        "evaluator_assigned",
        evaluator,
        actor=admin,
        notifiable=evaluation,
        metadata={"application_id": application.id, "constituent_name": constituent.full_name},
    )
    return evaluation


async def list_for_evaluator(db: AsyncSession, evaluator: User, status: Optional[EvaluationStatus] = None) -> List[Evaluation]:
    stmt = select(Evaluation).where(Evaluation.evaluator_id == evaluator.id).order_by(Evaluation.created_at.desc())
    if status is not None:
        stmt = stmt.where(Evaluation.status == status)
    return list((await db.execute(stmt)).scalars().all())


async def schedule(
    db: AsyncSession,
    evaluation: Evaluation,
    evaluator: User,
    evaluation_date,
    location: str,
    reschedule_reason: Optional[str] = None,
) -> Evaluation:
    _owned(evaluation, evaluator)
    if evaluation.status not in (EvaluationStatus.REQUESTED, EvaluationStatus.SCHEDULED, EvaluationStatus.NO_SHOW):
        raise EvaluationError(f"Cannot schedule an evaluation that is {evaluation.status.value}")
    rescheduling = evaluation.evaluation_date is not None
    if rescheduling and not (reschedule_reason or "").strip():
        raise EvaluationError("A reason is required to reschedule")
    evaluation.evaluation_date = evaluation_date
    evaluation.location = location
    evaluation.reschedule_reason = reschedule_reason if rescheduling else None
    evaluation.status = EvaluationStatus.SCHEDULED
    await db.flush()
    await audit_service.log_safely(
        db,
        action="evaluation_rescheduled" if rescheduling else "evaluation_scheduled",
        actor=evaluator,
        auditable=evaluation,
        metadata={"evaluation_date": evaluation_date.isoformat(), "location": location, "reason": reschedule_reason},
    )
    constituent = await db.get(User, evaluation.constituent_id)
    await notification_service.create_and_deliver(
        db,
        "evaluation_scheduled",
        constituent,
        actor=evaluator,
        notifiable=evaluation,
        metadata={"evaluation_date": evaluation_date.strftime("%B %d, %Y %I:%M %p"), "location": location},
    )
    return evaluation


async def complete(db: AsyncSession, evaluation: Evaluation, evaluator: User, data: EvaluationComplete) -> Evaluation:
    _owned(evaluation, evaluator)
    if evaluation.status == EvaluationStatus.COMPLETED:
        raise EvaluationError("Evaluation is already completed")
    if evaluation.status == EvaluationStatus.CANCELLED:
        raise EvaluationError("Cancelled evaluations cannot be completed")
    product_ids = set(data.recommended_product_ids) | {p.product_id for p in data.products_tried}
    found = await db.execute(select(Product).where(Product.id.in_(product_ids)))
    products = {p.id: p for p in found.scalars().all()}
    missing = sorted(product_ids - set(products))
    if missing:
        raise EvaluationError(f"Unknown products: {', '.join(str(m) for m in missing)}")

    evaluation.location = data.location
    evaluation.needs = data.needs
    evaluation.notes = data.notes
    evaluation.attendees = [a.model_dump() for a in data.attendees]
    evaluation.products_tried = [p.model_dump() for p in data.products_tried]
    evaluation.recommended_product_ids = list(data.recommended_product_ids)
    evaluation.evaluation_date = data.evaluation_date or evaluation.evaluation_date or utcnow()
    evaluation.status = EvaluationStatus.COMPLETED
    evaluation.completed_at = utcnow()
    await db.flush()
    await audit_service.log_safely(
        db,
        action="evaluation_completed",
        actor=evaluator,
        auditable=evaluation,
        metadata={"recommended_product_ids": evaluation.recommended_product_ids},
    )
    constituent = await db.get(User, evaluation.constituent_id)
    await notification_service.create_and_deliver(
        db,
        "evaluation_completed",
        constituent,
        actor=evaluator,
        notifiable=evaluation,
        metadata={"recommended_products": ", ".join(products[i].name for i in data.recommended_product_ids)},
    )
    return evaluation


async def request_additional_info(db: AsyncSession, evaluation: Evaluation, evaluator: User, notes: Optional[str] = None) -> Evaluation:
    _owned(evaluation, evaluator)
    if evaluation.status in (EvaluationStatus.COMPLETED, EvaluationStatus.CANCELLED):
        raise EvaluationError(f"Evaluation is {evaluation.status.value}")
    await audit_service.log_safely(
        db, action="requested_additional_info", actor=evaluator, auditable=evaluation, metadata={"notes": notes}
    )
    constituent = await db.get(User, evaluation.constituent_id)
    await notification_service.create_and_deliver(
        db, "requested_additional_info", constituent, actor=evaluator, notifiable=evaluation, metadata={"notes": notes}
    )
    return evaluation
