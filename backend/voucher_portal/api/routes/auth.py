"""Sign in, constituent registration and password management."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_current_user, get_db_session
from voucher_portal.core.security import create_access_token
from voucher_portal.models.enums import UserType
from voucher_portal.models.schemas import (
    ConstituentRegistration,
    PasswordChange,
    PasswordResetConfirm,
    PasswordResetRequest,
    SignInRequest,
    TokenResponse,
    UserRead,
)
from voucher_portal.models.tables import User
from voucher_portal.services import user_service
from voucher_portal.services.user_service import AccountLocked, AuthError, UserError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _token_response(user: User) -> TokenResponse:
    token, expires_in = create_access_token(user.id, user.role)
    return TokenResponse(access_token=token, expires_in=expires_in, user=UserRead.model_validate(user))


@router.post("/sign_in", response_model=TokenResponse)
async def sign_in(payload: SignInRequest, db: AsyncSession = Depends(get_db_session)):
    try:
        user = await user_service.authenticate(db, payload.email, payload.password)
    except AccountLocked as e:
        await db.commit()
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(e))
    except AuthError as e:
        # Persist the failed-attempt counter before rejecting
        await db.commit()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    await db.commit()
    return _token_response(user)


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(payload: ConstituentRegistration, db: AsyncSession = Depends(get_db_session)):
    try:
        user = await user_service.create_user(db, payload, UserType.CONSTITUENT, password=payload.password)
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    await db.commit()
    logger.info("[auth] constituent %s registered", user.id)
    return _token_response(user)


@router.post("/password_reset", status_code=status.HTTP_202_ACCEPTED)
async def request_password_reset(payload: PasswordResetRequest, db: AsyncSession = Depends(get_db_session)):
    await user_service.request_password_reset(db, payload.email)
    await db.commit()
    # Same answer whether or not the address is known
    return {"message": "If that email is registered, a reset link is on its way."}


@router.post("/password_reset/confirm")
async def confirm_password_reset(payload: PasswordResetConfirm, db: AsyncSession = Depends(get_db_session)):
    try:
        await user_service.reset_password(db, payload.token, payload.password, payload.password_confirmation)
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    await db.commit()
    return {"message": "Password has been reset."}


@router.put("/password")
async def change_password(
    payload: PasswordChange,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        await user_service.change_password(
            db, user, payload.password_challenge, payload.password, payload.password_confirmation
        )
    except UserError as e:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    await db.commit()
    return {"message": "Password updated."}


@router.get("/me", response_model=UserRead)
async def me(user: User = Depends(get_current_user)):
    return user
