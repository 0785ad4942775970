"""Constituent portal: profile, applications, proof uploads, vouchers,
notifications and dependents.

A guardian reaches a dependent's application through the same
application routes as their own.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_db_session, get_or_404, require_constituent
from voucher_portal.core.config import settings
from voucher_portal.core.observability import sentry_breadcrumb
from voucher_portal.models.enums import ProofSubmissionMethod, ProofType
from voucher_portal.models.schemas import (
    ApplicationCreate,
    ApplicationRead,
    ApplicationUpdate,
    DependentCreate,
    DependentRead,
    NotificationRead,
    UserRead,
    UserUpdate,
    VoucherRead,
)
from voucher_portal.models.tables import Application, Notification, User, Voucher
from voucher_portal.services.application_service import ApplicationError, application_service
from voucher_portal.services.guardian_service import guardian_service
from voucher_portal.services.notification_service import notification_service
from voucher_portal.services.proof_attachment_service import ProofFile, ProofValidationError, proof_attachment_service
from voucher_portal.services.rate_limit import RateLimit, RateLimitExceeded
from voucher_portal.services.user_service import UserError, create_dependent, validate_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/constituent", tags=["constituent"])


async def _own_application(db: AsyncSession, application_id: int, user: User) -> Application:
    application = await get_or_404(db, Application, application_id, "Application")
    if user.id not in (application.user_id, application.managing_guardian_id):
        raise HTTPException(status_code=404, detail="Application not found")
    return application


async def _own_dependent(db: AsyncSession, dependent_id: int, guardian: User):
    link = await guardian_service.relationship(db, guardian.id, dependent_id)
    if link is None:
        raise HTTPException(status_code=404, detail="Dependent not found")
    return link, await db.get(User, dependent_id)


def _dependent_read(dependent: User, relationship_type: str) -> DependentRead:
    return DependentRead.model_validate(dependent).model_copy(update={"relationship_type": relationship_type})


@router.get("/profile", response_model=UserRead)
async def get_profile(user: User = Depends(require_constituent)):
    return user


@router.patch("/profile", response_model=UserRead)
async def update_profile(
    payload: UserUpdate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    for field, value in payload.model_dump(exclude_unset=True, exclude={"status"}).items():
        setattr(user, field, value)
    try:
        validate_profile(user)
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return user


@router.get("/applications", response_model=List[ApplicationRead])
async def list_applications(user: User = Depends(require_constituent), db: AsyncSession = Depends(get_db_session)):
    return await application_service.list_for_user(db, user)


@router.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
async def create_application(
    payload: ApplicationCreate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        application = await application_service.create(db, user, payload, submit=payload.submit)
    except ApplicationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return application


@router.get("/applications/{application_id}", response_model=ApplicationRead)
async def get_application(
    application_id: int,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    return await _own_application(db, application_id, user)


@router.patch("/applications/{application_id}", response_model=ApplicationRead)
async def update_application(
    application_id: int,
    payload: ApplicationUpdate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    application = await _own_application(db, application_id, user)
    try:
        await application_service.update_draft(db, application, payload)
    except ApplicationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return application


@router.post("/applications/{application_id}/submit", response_model=ApplicationRead)
async def submit_application(
    application_id: int,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    application = await _own_application(db, application_id, user)
    try:
        await application_service.submit(db, application, user)
    except ApplicationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return application


@router.post("/applications/{application_id}/proofs", response_model=ApplicationRead)
async def upload_proof(
    application_id: int,
    proof_type: ProofType = Form(...),
    file: UploadFile = File(...),
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    application = await _own_application(db, application_id, user)
    try:
        await RateLimit.check(db, "proof_submission", user.id, "web")
    except RateLimitExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after or 3600)},
        )

    data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
    proof = ProofFile(filename=file.filename or "upload", content_type=file.content_type or "", data=data)
    sentry_breadcrumb("proof", "upload", data={"application_id": application.id, "proof_type": proof_type.value})
    try:
        await proof_attachment_service.attach_proof(
            db, application, proof_type, proof, ProofSubmissionMethod.WEB, actor=user
        )
    except ProofValidationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail={"error_type": e.error_type, "message": str(e)})
    await db.commit()
    return application


@router.get("/vouchers", response_model=List[VoucherRead])
async def list_vouchers(user: User = Depends(require_constituent), db: AsyncSession = Depends(get_db_session)):
    result = await db.execute(
        select(Voucher)
        .join(Application, Voucher.application_id == Application.id)
        .where(Application.user_id == user.id)
        .order_by(Voucher.issued_at.desc())
    )
    return list(result.scalars().all())


@router.get("/notifications", response_model=List[NotificationRead])
async def list_notifications(
    unread: bool = False,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    return await notification_service.list_for(db, user, unread_only=unread)


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    notification = await get_or_404(db, Notification, notification_id, "Notification")
    if notification.recipient_id != user.id:
        raise HTTPException(status_code=404, detail="Notification not found")
    await notification_service.mark_read(db, notification)
    await db.commit()
    return notification


# ---------------------------------------------------------------------------
# Dependents


@router.get("/dependents", response_model=List[DependentRead])
async def list_dependents(user: User = Depends(require_constituent), db: AsyncSession = Depends(get_db_session)):
    return [_dependent_read(d, kind) for d, kind in await guardian_service.dependents_of(db, user)]


@router.post("/dependents", response_model=DependentRead, status_code=status.HTTP_201_CREATED)
async def add_dependent(
    payload: DependentCreate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        dependent = await create_dependent(db, user, payload)
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return _dependent_read(dependent, payload.relationship_type.strip())


@router.get("/dependents/applications", response_model=List[ApplicationRead])
async def list_dependent_applications(
    user: User = Depends(require_constituent), db: AsyncSession = Depends(get_db_session)
):
    return await guardian_service.dependent_applications(db, user)


@router.get("/dependents/{dependent_id}", response_model=DependentRead)
async def get_dependent(
    dependent_id: int,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    link, dependent = await _own_dependent(db, dependent_id, user)
    return _dependent_read(dependent, link.relationship_type)


@router.patch("/dependents/{dependent_id}", response_model=DependentRead)
async def update_dependent(
    dependent_id: int,
    payload: UserUpdate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    link, dependent = await _own_dependent(db, dependent_id, user)
    for field, value in payload.model_dump(exclude_unset=True, exclude={"status"}).items():
        setattr(dependent, field, value)
    try:
        validate_profile(dependent)
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return _dependent_read(dependent, link.relationship_type)


@router.delete("/dependents/{dependent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_dependent(
    dependent_id: int,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    link, _ = await _own_dependent(db, dependent_id, user)
    await guardian_service.remove_relationship(db, link, actor=user)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/dependents/{dependent_id}/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED
)
async def create_dependent_application(
    dependent_id: int,
    payload: ApplicationCreate,
    user: User = Depends(require_constituent),
    db: AsyncSession = Depends(get_db_session),
):
    _, dependent = await _own_dependent(db, dependent_id, user)
    try:
        application = await application_service.create(db, dependent, payload, submit=payload.submit, actor=user)
    except ApplicationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return application
