"""Audit trail service.

Every meaningful business action writes an ``Event`` row.  Repeated calls
for the same action on the same record inside ``DEDUP_WINDOW`` are
suppressed so retried requests and double-submitted forms do not clutter
the trail.  Display-time merging of events with status changes and
notifications lives in ``event_deduplication``.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.tables import Event, User
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEDUP_WINDOW = dt.timedelta(seconds=5)

# Events that must always be recorded, even when repeated.
_NEVER_DEDUPLICATED = {
    "application_created",
    "voucher_verification_attempt",
    "email_template_updated",
    "email_template_test_sent",
    "guardian_relationship_created",
    "guardian_relationship_removed",
}


def auditable_ref(obj: Any) -> tuple[Optional[str], Optional[int]]:
    """Return the ``(type, id)`` pair stored for a polymorphic reference."""
    if obj is None:
        return None, None
    return type(obj).__name__, getattr(obj, "id", None)


def event_fingerprint(action: str, metadata: Optional[Dict[str, Any]]) -> str:
    """Distinguish meaningfully different events that share an action name."""
    metadata = metadata or {}
    if "proof_submitted" in action or "proof_attached" in action:
        proof_type = metadata.get("proof_type")
        submission_method = metadata.get("submission_method")
        file_key = metadata.get("file_key")
        if "proof_attached" in action and file_key:
            return f"{action}_{proof_type}_file_{file_key}"
        if proof_type and submission_method:
            return f"{action}_{proof_type}_{submission_method}"
    return action


class AuditEventService:
    """Write audit ``Event`` rows with short-window de-duplication."""

    async def recent_duplicate_exists(
        self,
        db: AsyncSession,
        action: str,
        auditable: Any,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[dt.datetime] = None,
    ) -> bool:
        auditable_type, auditable_id = auditable_ref(auditable)
        since = (now or utcnow()) - DEDUP_WINDOW
        stmt = select(Event).where(
            Event.action == action,
            Event.auditable_type == auditable_type,
            Event.auditable_id == auditable_id,
            Event.created_at >= since,
        )
        fingerprint = event_fingerprint(action, metadata)
        result = await db.execute(stmt)
        return any(event_fingerprint(e.action, e.details) == fingerprint for e in result.scalars().all())

    async def log(
        self,
        db: AsyncSession,
        action: str,
        actor: Optional[User],
        auditable: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[dt.datetime] = None,
    ) -> Optional[Event]:
        """Record ``action``; returns ``None`` when suppressed as a duplicate.

        The row is added to the session and flushed; the caller owns the commit.
        """
        metadata = dict(metadata or {})
        if action not in _NEVER_DEDUPLICATED and await self.recent_duplicate_exists(db, action, auditable, metadata):
            logger.info("[audit] duplicate event '%s' for %s suppressed", action, auditable_ref(auditable))
            return None

        metadata.setdefault("__service_generated", True)
        auditable_type, auditable_id = auditable_ref(auditable)
        event = Event(
            user_id=actor.id if actor is not None else None,
            action=action,
            auditable_type=auditable_type,
            auditable_id=auditable_id,
            details=metadata,
            created_at=created_at or utcnow(),
        )
        db.add(event)
        await db.flush()
        return event

    async def log_safely(self, db: AsyncSession, *args, **kwargs) -> Optional[Event]:
        """Like :meth:`log` but never raises; used where auditing is a side effect."""
        try:
            return await self.log(db, *args, **kwargs)
        except Exception as e:
            logger.error("[audit] failed to log event %s: %s", kwargs.get("action") or (args[0] if args else "?"), e)
            return None


audit_service = AuditEventService()

__all__ = ["AuditEventService", "audit_service", "auditable_ref", "event_fingerprint", "DEDUP_WINDOW"]
