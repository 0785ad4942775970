"""Accounts: registration, sign in with lockout, password reset.

Automated changes (scheduled jobs, mailbox processing) are attributed to a
single administrator account, the *system user*, created on first use.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.core.security import (
    TokenError,
    create_password_reset_token,
    hash_password,
    parse_password_reset_token,
    verify_password,
    verify_password_reset_token,
)
from voucher_portal.models.enums import CommunicationPreference, UserStatus, UserType, VendorStatus, W9Status
from voucher_portal.models.schemas import DependentCreate, UserBase
from voucher_portal.models.tables import User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.guardian_service import GuardianError, guardian_service, placeholder_email
from voucher_portal.services.notification_service import notification_service
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

MAX_LOGIN_ATTEMPTS = 5
ADDRESS_FIELDS = ("physical_address_1", "physical_address_2", "city", "state", "zip_code")
LOCK_DURATION = dt.timedelta(hours=1)


class AuthError(Exception):
    pass


class AccountLocked(AuthError):
    pass


class UserError(Exception):
    pass


async def find_by_email(db: AsyncSession, email: Optional[str]) -> Optional[User]:
    if not email:
        return None
    result = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_system_user(db: AsyncSession) -> User:
    user = await find_by_email(db, settings.SYSTEM_USER_EMAIL)
    if user is None:
        user = User(
            type=UserType.ADMINISTRATOR,
            email=settings.SYSTEM_USER_EMAIL,
            first_name="System",
            last_name="User",
            status=UserStatus.ACTIVE,
        )
        db.add(user)
        await db.flush()
        logger.info("[users] created system user %s", user.id)
    return user


def validate_profile(user: User) -> None:
    if user.communication_preference == CommunicationPreference.LETTER and not user.has_address:
        raise UserError("A complete mailing address is required for letter communication")


async def create_user(
    db: AsyncSession,
    data: UserBase,
    user_type: UserType,
    password: Optional[str] = None,
    actor: Optional[User] = None,
    **extra,
) -> User:
    if await find_by_email(db, data.email):
        raise UserError("Email has already been taken")
    user = User(type=user_type, **data.model_dump(exclude={"password", "type"}), **extra)
    if password:
        user.password_digest = hash_password(password)
    if user_type == UserType.VENDOR:
        user.w9_status = W9Status.NOT_SUBMITTED
        user.vendor_status = VendorStatus.PENDING
    validate_profile(user)
    db.add(user)
    await db.flush()
    await audit_service.log_safely(db, action="user_created", actor=actor or user, auditable=user, metadata={"type": user_type.value})
    await notification_service.create_and_deliver(db, "account_created", user, actor=actor)
    return user


async def create_dependent(
    db: AsyncSession, guardian: User, data: DependentCreate, actor: Optional[User] = None
) -> User:
    """Create a constituent account managed by ``guardian``.

    The dependent cannot sign in until a password is reset for them.
    """
    if guardian.type != UserType.CONSTITUENT:
        raise UserError("Only constituents can add dependents")
    if data.email and await find_by_email(db, data.email):
        raise UserError("Email has already been taken")
    fields = data.model_dump(exclude={"email", "phone", "relationship_type"})
    if not any(fields[f] for f in ADDRESS_FIELDS):
        fields.update({f: getattr(guardian, f) for f in ADDRESS_FIELDS})

    dependent = User(
        type=UserType.CONSTITUENT,
        email=data.email or placeholder_email(),
        dependent_email=data.email or None,
        phone=data.phone,
        dependent_phone=data.phone,
        password_digest=hash_password(secrets.token_urlsafe(32)),
        **fields,
    )
    if not dependent.disabilities:
        raise UserError("At least one disability must be selected")
    validate_profile(dependent)
    db.add(dependent)
    await db.flush()
    await audit_service.log_safely(
        db,
        action="user_created",
        actor=actor or guardian,
        auditable=dependent,
        metadata={"type": UserType.CONSTITUENT.value, "guardian_id": guardian.id},
    )
    try:
        await guardian_service.add_relationship(db, guardian, dependent, data.relationship_type, actor=actor)
    except GuardianError as e:
        raise UserError(str(e)) from e
    return dependent


async def authenticate(db: AsyncSession, email: str, password: str) -> User:
    """Verify credentials, applying the failed-attempt lockout.

    The caller commits so failed attempts are persisted too.
    """
    user = await find_by_email(db, email)
    if user is None:
        raise AuthError("Invalid email or password")
    now = utcnow()
    if user.locked_at is not None:
        if user.locked_at + LOCK_DURATION > now:
            raise AccountLocked("Account locked due to too many failed attempts. Try again later.")
        user.locked_at = None
        user.failed_attempts = 0

    if not verify_password(password, user.password_digest):
        user.failed_attempts = (user.failed_attempts or 0) + 1
        if user.failed_attempts >= MAX_LOGIN_ATTEMPTS:
            user.locked_at = now
            logger.info("[users] user %s locked after %s failed sign-ins", user.id, user.failed_attempts)
        await db.flush()
        raise AuthError("Invalid email or password")

    if user.status != UserStatus.ACTIVE:
        raise AuthError("Account is not active")
    user.failed_attempts = 0
    user.locked_at = None
    user.last_sign_in_at = now
    await db.flush()
    return user


async def request_password_reset(db: AsyncSession, email: str) -> Optional[str]:
    """Email a reset link when the address is known; returns the token."""
    user = await find_by_email(db, email)
    if user is None:
        logger.info("[users] password reset requested for unknown address")
        return None
    token = create_password_reset_token(user.id, user.password_digest)
    await notification_service.create_and_deliver(
        db,
        "password_reset",
        user,
        metadata={
            "reset_url": f"{settings.FRONTEND_BASE_URL.rstrip('/')}/password/reset?token={token}",
            "expires_minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
        },
    )
    return token


async def reset_password(db: AsyncSession, token: str, password: str, confirmation: str) -> User:
    if password != confirmation:
        raise UserError("Password confirmation doesn't match")
    try:
        user_id, _, _ = parse_password_reset_token(token)
    except TokenError as e:
        raise UserError("Password reset link is invalid or has expired") from e
    user = await db.get(User, user_id)
    if user is None:
        raise UserError("Password reset link is invalid or has expired")
    try:
        verify_password_reset_token(token, user.password_digest)
    except TokenError as e:
        raise UserError("Password reset link is invalid or has expired") from e
    user.password_digest = hash_password(password)
    user.failed_attempts = 0
    user.locked_at = None
    await db.flush()
    await audit_service.log_safely(db, action="password_reset", actor=user, auditable=user)
    return user


async def change_password(db: AsyncSession, user: User, challenge: str, password: str, confirmation: str) -> User:
    if not verify_password(challenge, user.password_digest):
        raise UserError("Password challenge is invalid")
    if password != confirmation:
        raise UserError("Password confirmation doesn't match")
    user.password_digest = hash_password(password)
    await db.flush()
    await audit_service.log_safely(db, action="password_changed", actor=user, auditable=user)
    return user
