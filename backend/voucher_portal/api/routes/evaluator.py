"""Evaluator portal: assigned evaluations."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_db_session, get_or_404, require_evaluator
from voucher_portal.models.enums import EvaluationStatus
from voucher_portal.models.schemas import EvaluationComplete, EvaluationRead, EvaluationSchedule
from voucher_portal.models.tables import Evaluation, User
from voucher_portal.services import evaluation_service
from voucher_portal.services.evaluation_service import EvaluationError

router = APIRouter(prefix="/evaluator", tags=["evaluator"])


class AdditionalInfoRequest(BaseModel):
    notes: Optional[str] = None


@router.get("/evaluations", response_model=List[EvaluationRead])
async def list_evaluations(
    status_filter: Optional[EvaluationStatus] = None,
    evaluator: User = Depends(require_evaluator),
    db: AsyncSession = Depends(get_db_session),
):
    return await evaluation_service.list_for_evaluator(db, evaluator, status_filter)


@router.get("/evaluations/{evaluation_id}", response_model=EvaluationRead)
async def get_evaluation(
    evaluation_id: int,
    evaluator: User = Depends(require_evaluator),
    db: AsyncSession = Depends(get_db_session),
):
    evaluation = await get_or_404(db, Evaluation, evaluation_id, "Evaluation")
    if evaluation.evaluator_id != evaluator.id and not evaluator.is_admin:
        raise HTTPException(status_code=404, detail="Evaluation not found")
    return evaluation


@router.post("/evaluations/{evaluation_id}/schedule", response_model=EvaluationRead)
async def schedule_evaluation(
    evaluation_id: int,
    payload: EvaluationSchedule,
    evaluator: User = Depends(require_evaluator),
    db: AsyncSession = Depends(get_db_session),
):
    evaluation = await get_or_404(db, Evaluation, evaluation_id, "Evaluation")
    try:
        await evaluation_service.schedule(
            db, evaluation, evaluator, payload.evaluation_date, payload.location, payload.reschedule_reason
        )
    except EvaluationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return evaluation


@router.post("/evaluations/{evaluation_id}/complete", response_model=EvaluationRead)
async def complete_evaluation(
    evaluation_id: int,
    payload: EvaluationComplete,
    evaluator: User = Depends(require_evaluator),
    db: AsyncSession = Depends(get_db_session),
):
    evaluation = await get_or_404(db, Evaluation, evaluation_id, "Evaluation")
    try:
        await evaluation_service.complete(db, evaluation, evaluator, payload)
    except EvaluationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return evaluation


@router.post("/evaluations/{evaluation_id}/request_additional_info", response_model=EvaluationRead)
async def request_additional_info(
    evaluation_id: int,
    payload: AdditionalInfoRequest,
    evaluator: User = Depends(require_evaluator),
    db: AsyncSession = Depends(get_db_session),
):
    evaluation = await get_or_404(db, Evaluation, evaluation_id, "Evaluation")
    try:
        await evaluation_service.request_additional_info(db, evaluation, evaluator, payload.notes)
    except EvaluationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return evaluation
