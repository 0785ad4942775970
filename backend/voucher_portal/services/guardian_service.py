"""Guardian and dependent accounts.

A guardian is a constituent who applies on behalf of one or more
dependents (minors or adults who cannot manage their own application).
Dependents are full constituent accounts linked through
``GuardianRelationship``; their applications record the guardian in
``managing_guardian_id`` and their notifications reach the guardian unless
the dependent has contact details of their own.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.models.enums import UserType
from voucher_portal.models.tables import Application, GuardianRelationship, User
from voucher_portal.services.audit_service import audit_service

logger = logging.getLogger(__name__)


class GuardianError(Exception):
    pass


def placeholder_email() -> str:
    """Unique address for a dependent who shares the guardian's email."""
    return f"dependent-{uuid.uuid4()}@{settings.DEPENDENT_EMAIL_DOMAIN}"


class GuardianService:
    async def add_relationship(
        self,
        db: AsyncSession,
        guardian: User,
        dependent: User,
        relationship_type: str,
        actor: Optional[User] = None,
    ) -> GuardianRelationship:
        relationship_type = (relationship_type or "").strip()
        if not relationship_type:
            raise GuardianError("Relationship type is required")
        if guardian.id == dependent.id:
            raise GuardianError("A user cannot be their own guardian")
        if guardian.type != UserType.CONSTITUENT or dependent.type != UserType.CONSTITUENT:
            raise GuardianError("Guardians and dependents must be constituents")
        if await self.relationship(db, guardian.id, dependent.id) is not None:
            raise GuardianError("This guardian relationship already exists")

        link = GuardianRelationship(
            guardian_id=guardian.id, dependent_id=dependent.id, relationship_type=relationship_type
        )
        db.add(link)
        await db.flush()
        await audit_service.log_safely(
            db,
            action="guardian_relationship_created",
            actor=actor or guardian,
            auditable=dependent,
            metadata={"guardian_id": guardian.id, "relationship_type": relationship_type},
        )
        logger.info("[guardian] user %s now manages dependent %s (%s)", guardian.id, dependent.id, relationship_type)
        return link

    async def remove_relationship(
        self, db: AsyncSession, link: GuardianRelationship, actor: Optional[User] = None
    ) -> None:
        """Unlink a guardian; the dependent account and its applications stay."""
        await db.delete(link)
        await db.execute(
            update(Application)
            .where(Application.user_id == link.dependent_id, Application.managing_guardian_id == link.guardian_id)
            .values(managing_guardian_id=None)
        )
        await db.flush()
        await audit_service.log_safely(
            db,
            action="guardian_relationship_removed",
            actor=actor,
            auditable=await db.get(User, link.dependent_id),
            metadata={"guardian_id": link.guardian_id, "relationship_type": link.relationship_type},
        )

    async def relationship(self, db: AsyncSession, guardian_id: int, dependent_id: int) -> Optional[GuardianRelationship]:
        result = await db.execute(
            select(GuardianRelationship).where(
                GuardianRelationship.guardian_id == guardian_id,
                GuardianRelationship.dependent_id == dependent_id,
            )
        )
        return result.scalar_one_or_none()

    async def dependents_of(self, db: AsyncSession, guardian: User) -> List[Tuple[User, str]]:
        """``(dependent, relationship_type)`` pairs, oldest link first."""
        result = await db.execute(
            select(User, GuardianRelationship.relationship_type)
            .join(GuardianRelationship, GuardianRelationship.dependent_id == User.id)
            .where(GuardianRelationship.guardian_id == guardian.id)
            .order_by(GuardianRelationship.id)
        )
        return [(user, kind) for user, kind in result.all()]

    async def dependent_applications(self, db: AsyncSession, guardian: User) -> List[Application]:
        result = await db.execute(
            select(Application)
            .join(GuardianRelationship, GuardianRelationship.dependent_id == Application.user_id)
            .where(GuardianRelationship.guardian_id == guardian.id)
            .order_by(Application.created_at.desc())
        )
        return list(result.scalars().all())

    async def guardian_for_contact(self, db: AsyncSession, user: Optional[User]) -> Optional[User]:
        """The guardian who receives a dependent's mail, or ``None``."""
        if user is None or user.type != UserType.CONSTITUENT:
            return None
        result = await db.execute(
            select(User)
            .join(GuardianRelationship, GuardianRelationship.guardian_id == User.id)
            .where(GuardianRelationship.dependent_id == user.id)
            .order_by(GuardianRelationship.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def contact_user(self, db: AsyncSession, user: Optional[User]) -> Optional[User]:
        """Whose contact details and preference apply to ``user``'s mail."""
        if user is None or user.dependent_email:
            return user
        return await self.guardian_for_contact(db, user) or user

    async def effective_email(self, db: AsyncSession, user: User) -> Optional[str]:
        if user.dependent_email:
            return user.dependent_email
        contact = await self.contact_user(db, user)
        return contact.email if contact is not None else None


guardian_service = GuardianService()

__all__ = ["GuardianError", "GuardianService", "guardian_service", "placeholder_email"]
