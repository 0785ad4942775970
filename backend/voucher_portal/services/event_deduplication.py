"""Application timeline assembly.

An application's history is spread across audit events, status change rows,
proof reviews and notifications, and one business action usually produces
several of them (a proof rejection writes a review, an event and a
notification).  The timeline groups entries that share a fingerprint within
the same one-minute bucket and keeps the most authoritative one.
"""

from __future__ import annotations

import re
from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.schemas import TimelineEntry
from voucher_portal.models.tables import (
    Application,
    ApplicationStatusChange,
    Event,
    Notification,
    ProofReview,
)

DEDUPLICATION_WINDOW_SECONDS = 60

PRIORITY = {"status_change": 3, "proof_review": 2, "event": 2, "notification": 1}


def _value(v) -> str:
    return getattr(v, "value", v) if v is not None else ""


def entry_from_status_change(change: ApplicationStatusChange) -> TimelineEntry:
    details = dict(change.details or {})
    details.update({"from_status": change.from_status, "to_status": change.to_status, "change_type": change.change_type})
    if change.notes:
        details["notes"] = change.notes
    if change.change_type == "medical_certification":
        action = f"medical_certification_{change.to_status}"
    else:
        action = f"status_change_{change.to_status}"
    return TimelineEntry(kind="status_change", action=action, actor_id=change.user_id, occurred_at=change.changed_at, details=details)


def entry_from_proof_review(review: ProofReview) -> TimelineEntry:
    return TimelineEntry(
        kind="proof_review",
        action=f"proof_{_value(review.status)}",
        actor_id=review.admin_id,
        occurred_at=review.created_at,
        details={
            "proof_type": _value(review.proof_type),
            "status": _value(review.status),
            "rejection_reason": review.rejection_reason,
        },
    )


def entry_from_event(event: Event) -> TimelineEntry:
    details = {k: v for k, v in (event.details or {}).items() if not str(k).startswith("__")}
    return TimelineEntry(kind="event", action=event.action, actor_id=event.user_id, occurred_at=event.created_at, details=details)


def entry_from_notification(notification: Notification) -> TimelineEntry:
    return TimelineEntry(
        kind="notification",
        action=notification.action,
        actor_id=notification.actor_id,
        occurred_at=notification.created_at,
        details={**(notification.details or {}), "channel": _value(notification.channel)},
    )


class EventDeduplicationService:
    """Collapse duplicate timeline entries from multiple sources."""

    def generic_action(self, entry: TimelineEntry) -> str:
        if entry.kind in ("event", "notification"):
            return re.sub(r"_proof_submitted$", "_submission", entry.action)
        return entry.action

    def fingerprint_details(self, entry: TimelineEntry) -> str | None:
        d = entry.details
        if entry.kind == "status_change":
            if d.get("change_type") == "medical_certification":
                return None
            return f"{d.get('from_status')}-{d.get('to_status')}"
        if "proof_submitted" in entry.action:
            return f"{d.get('proof_type')}-{d.get('submission_method')}"
        if entry.kind == "proof_review":
            return f"{d.get('proof_type')}-{d.get('status')}"
        return None

    def fingerprint(self, entry: TimelineEntry) -> str:
        parts = [self.generic_action(entry), self.fingerprint_details(entry)]
        return "_".join(p for p in parts if p) or f"default_{entry.kind}_{entry.occurred_at.isoformat()}"

    def deduplicate(self, entries: Iterable[TimelineEntry]) -> List[TimelineEntry]:
        """Return unique entries, newest first."""
        groups: dict[tuple[str, int], list[TimelineEntry]] = {}
        for entry in entries:
            bucket = int(entry.occurred_at.timestamp()) // DEDUPLICATION_WINDOW_SECONDS
            groups.setdefault((self.fingerprint(entry), bucket), []).append(entry)
        best = [max(group, key=lambda e: (PRIORITY.get(e.kind, 0), e.occurred_at)) for group in groups.values()]
        return sorted(best, key=lambda e: e.occurred_at, reverse=True)

    async def timeline(self, db: AsyncSession, application: Application) -> List[TimelineEntry]:
        """Load every history source for ``application`` and de-duplicate."""
        entries: list[TimelineEntry] = []
        changes = await db.execute(
            select(ApplicationStatusChange).where(ApplicationStatusChange.application_id == application.id)
        )
        entries.extend(entry_from_status_change(c) for c in changes.scalars().all())
        reviews = await db.execute(select(ProofReview).where(ProofReview.application_id == application.id))
        entries.extend(entry_from_proof_review(r) for r in reviews.scalars().all())
        events = await db.execute(
            select(Event).where(Event.auditable_type == "Application", Event.auditable_id == application.id)
        )
        entries.extend(entry_from_event(e) for e in events.scalars().all())
        notifications = await db.execute(
            select(Notification).where(
                Notification.notifiable_type == "Application", Notification.notifiable_id == application.id
            )
        )
        entries.extend(entry_from_notification(n) for n in notifications.scalars().all())
        return self.deduplicate(entries)


__all__ = ["EventDeduplicationService", "DEDUPLICATION_WINDOW_SECONDS"]
