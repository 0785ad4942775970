"""Program policies (runtime-tunable integer rules).

Policies are stored as ``key -> int`` rows so administrators can adjust
voucher values, waiting periods and limits without a deploy.  Missing rows
fall back to ``DEFAULT_POLICIES``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.enums import DisabilityType
from voucher_portal.models.tables import Policy, User
from voucher_portal.services.audit_service import audit_service

logger = logging.getLogger(__name__)

# 2024 federal poverty guidelines by household size
_FPL_BASE = {1: 15060, 2: 20440, 3: 25820, 4: 31200, 5: 36580, 6: 41960, 7: 47340, 8: 52720}

DEFAULT_POLICIES: Dict[str, int] = {
    "voucher_validity_period_months": 6,
    "voucher_minimum_redemption_amount": 10,
    "waiting_period_years": 3,
    "max_proof_rejections": 3,
    "max_training_sessions": 3,
    "fpl_modifier_percentage": 400,
    "voucher_verification_max_attempts": 3,
    "proof_submission_rate_limit_web": 10,
    "proof_submission_rate_limit_email": 5,
    "proof_submission_rate_period": 1,
    "invoice_period_days": 14,
    **{f"voucher_value_{d.value}_disability": 5000 for d in DisabilityType},
    **{f"fpl_{size}_person": amount for size, amount in _FPL_BASE.items()},
}


class PolicyService:
    """Read and update policy values."""

    async def get(self, db: AsyncSession, key: str) -> Optional[int]:
        result = await db.execute(select(Policy.value).where(Policy.key == key))
        value = result.scalar_one_or_none()
        if value is None:
            return DEFAULT_POLICIES.get(key)
        return int(value)

    async def get_int(self, db: AsyncSession, key: str, default: int) -> int:
        value = await self.get(db, key)
        return default if value is None else int(value)

    async def all(self, db: AsyncSession) -> Dict[str, int]:
        merged = dict(DEFAULT_POLICIES)
        result = await db.execute(select(Policy))
        for policy in result.scalars().all():
            merged[policy.key] = int(policy.value)
        return merged

    async def set(self, db: AsyncSession, key: str, value: int, actor: Optional[User] = None) -> Policy:
        """Upsert a policy row; caller commits."""
        result = await db.execute(select(Policy).where(Policy.key == key))
        policy = result.scalar_one_or_none()
        previous = policy.value if policy else DEFAULT_POLICIES.get(key)
        if policy is None:
            policy = Policy(key=key, value=int(value))
            db.add(policy)
        else:
            policy.value = int(value)
        policy.updated_by_id = actor.id if actor else None
        await db.flush()
        logger.info("[policy] %s changed %s -> %s", key, previous, value)

        await audit_service.log(
            db,
            action="policy_changed",
            actor=actor,
            auditable=policy,
            metadata={"key": key, "previous_value": previous, "value": int(value)},
        )
        return policy


policy_service = PolicyService()

__all__ = ["PolicyService", "policy_service", "DEFAULT_POLICIES"]
