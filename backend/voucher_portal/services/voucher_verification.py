"""Identity check a vendor performs before redeeming a voucher.

The vendor enters the constituent's date of birth.  Failed attempts are
counted per vendor and voucher in Redis; after
``voucher_verification_max_attempts`` failures the voucher is blocked for
that vendor until the counter expires.  A successful check is remembered for
``VERIFIED_TTL_SECONDS`` so the following redemption request can proceed.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.tables import Application, User, Voucher
from voucher_portal.services import cache
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.policy_service import policy_service

logger = logging.getLogger(__name__)

ATTEMPTS_TTL_SECONDS = 24 * 3600
VERIFIED_TTL_SECONDS = 30 * 60


@dataclass
class VerificationResult:
    success: bool
    message_key: str
    attempts_left: Optional[int] = None


def _parse_dob(value: str) -> Optional[dt.date]:
    value = (value or "").strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y"):
        try:
            return dt.datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


class VoucherVerificationService:
    @staticmethod
    def attempts_key(vendor_id: int, voucher_id: int) -> str:
        return f"voucher_verification:attempts:{vendor_id}:{voucher_id}"

    @staticmethod
    def verified_key(vendor_id: int, voucher_id: int) -> str:
        return f"voucher_verification:verified:{vendor_id}:{voucher_id}"

    async def attempts(self, vendor: User, voucher: Voucher) -> int:
        return await cache.get_int(self.attempts_key(vendor.id, voucher.id)) or 0

    async def verify(self, db: AsyncSession, voucher: Voucher, vendor: User, submitted_dob: str) -> VerificationResult:
        max_attempts = await policy_service.get_int(db, "voucher_verification_max_attempts", 3)
        client = await cache.get_redis()
        attempts_key = self.attempts_key(vendor.id, voucher.id)
        used = await self.attempts(vendor, voucher)

        if used >= max_attempts:
            result = VerificationResult(False, "too_many_attempts", 0)
        else:
            application = await db.get(Application, voucher.application_id)
            constituent = await db.get(User, application.user_id) if application else None
            dob = _parse_dob(submitted_dob)
            if constituent is not None and constituent.date_of_birth and dob == constituent.date_of_birth:
                await client.delete(attempts_key)
                await client.set(self.verified_key(vendor.id, voucher.id), "1", ex=VERIFIED_TTL_SECONDS)
                result = VerificationResult(True, "dob_verification_success")
            else:
                used = int(await client.incr(attempts_key))
                await client.expire(attempts_key, ATTEMPTS_TTL_SECONDS)
                if used >= max_attempts:
                    result = VerificationResult(False, "too_many_attempts", 0)
                else:
                    result = VerificationResult(False, "dob_verification_failed", max_attempts - used)

        logger.info("[voucher] verification for %s by vendor %s: %s", voucher.code, vendor.id, result.message_key)
        await audit_service.log_safely(
            db,
            action="voucher_verification_attempt",
            actor=vendor,
            auditable=voucher,
            metadata={"success": result.success, "message_key": result.message_key, "attempts_left": result.attempts_left},
        )
        return result

    async def is_verified(self, vendor: User, voucher: Voucher) -> bool:
        client = await cache.get_redis()
        return bool(await client.get(self.verified_key(vendor.id, voucher.id)))

    async def clear(self, vendor: User, voucher: Voucher) -> None:
        await cache.cache_delete(self.verified_key(vendor.id, voucher.id))


voucher_verification_service = VoucherVerificationService()
