"""Notification creation and delivery.

``create_and_deliver`` records a ``Notification`` row inside the caller's
transaction and enqueues the ``deliver_notification`` actor, which renders
the message and hands it to the channel (Postmark email, Twilio fax or the
letter print queue).  Notification problems never break the business action
that triggered them: failures are logged and ``None`` is returned.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.core.observability import sentry_breadcrumb, sentry_capture, sentry_metric_inc
from voucher_portal.models.enums import (
    CommunicationPreference,
    DeliveryStatus,
    EmailStatus,
    NotificationChannel,
    UserStatus,
    UserType,
)
from voucher_portal.models.tables import Notification, User
from voucher_portal.services.audit_service import auditable_ref
from voucher_portal.services.email_template_service import email_template_service
from voucher_portal.services.fax_service import FaxService
from voucher_portal.services.guardian_service import guardian_service
from voucher_portal.services.letter_service import print_queue_service, render_pdf
from voucher_portal.services.mail_service import MailService
from voucher_portal.utils.helpers import utcnow
from voucher_portal.utils.templates import render

logger = logging.getLogger(__name__)


class BounceError(Exception):
    """The recipient address is known to bounce or has complained."""


def choose_channel(recipient: Optional[User], requested: Optional[NotificationChannel]) -> NotificationChannel:
    if requested is not None:
        return NotificationChannel(requested)
    if (
        recipient is not None
        and recipient.type == UserType.CONSTITUENT
        and recipient.communication_preference == CommunicationPreference.LETTER
    ):
        return NotificationChannel.LETTER
    return NotificationChannel.EMAIL


def enqueue_delivery(notification_id: int) -> None:
    from voucher_portal.core.tasks import deliver_notification

    deliver_notification.send(notification_id)


class NotificationService:
    def __init__(self, mailer: Optional[MailService] = None, fax: Optional[FaxService] = None) -> None:
        self._mailer = mailer
        self._fax = fax

    @property
    def mailer(self) -> MailService:
        return self._mailer or MailService()

    @property
    def fax(self) -> FaxService:
        return self._fax or FaxService()

    async def create_and_deliver(
        self,
        db: AsyncSession,
        action: str,
        recipient: Optional[User],
        actor: Optional[User] = None,
        notifiable: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        channel: Optional[NotificationChannel] = None,
    ) -> Optional[Notification]:
        """Store a notification and enqueue its delivery.

        ``metadata`` may carry ``to_email`` / ``to_fax`` for recipients that
        are not users (a constituent's medical provider).
        """
        metadata = dict(metadata or {})
        if recipient is None and not (metadata.get("to_email") or metadata.get("to_fax")):
            logger.warning("[notify] %s has no recipient; skipped", action)
            return None
        try:
            notifiable_type, notifiable_id = auditable_ref(notifiable)
            contact = await guardian_service.contact_user(db, recipient)
            notification = Notification(
                recipient_id=recipient.id if recipient is not None else None,
                actor_id=actor.id if actor is not None else None,
                action=action,
                notifiable_type=notifiable_type,
                notifiable_id=notifiable_id,
                channel=choose_channel(contact, channel),
                delivery_status=DeliveryStatus.PENDING,
                details=metadata,
            )
            db.add(notification)
            await db.flush()
        except Exception as e:
            logger.error("[notify] failed to create %s notification: %s", action, e)
            sentry_capture(e)
            return None

        try:
            enqueue_delivery(notification.id)
        except Exception as e:
            # The row stays pending; the delivery can be retried later.
            logger.error("[notify] failed to enqueue notification %s: %s", notification.id, e)
        sentry_metric_inc("notification.created", tags={"action": action, "channel": notification.channel.value})
        return notification

    async def notify_admins(
        self,
        db: AsyncSession,
        action: str,
        actor: Optional[User] = None,
        notifiable: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Notification]:
        result = await db.execute(
            select(User).where(User.type == UserType.ADMINISTRATOR, User.status == UserStatus.ACTIVE)
        )
        created = []
        for admin in result.scalars().all():
            n = await self.create_and_deliver(db, action, admin, actor, notifiable, metadata, NotificationChannel.EMAIL)
            if n is not None:
                created.append(n)
        return created

    def context_for(self, notification: Notification, recipient: Optional[User]) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "organization_name": settings.ORGANIZATION_NAME,
            "support_email": settings.SUPPORT_EMAIL,
            "portal_url": settings.FRONTEND_BASE_URL,
        }
        if recipient is not None:
            context.update({"first_name": recipient.first_name, "last_name": recipient.last_name})
        context.update(notification.details or {})
        return context

    async def deliver(self, db: AsyncSession, notification: Notification) -> Notification:
        """Send one notification through its channel and record the outcome.

        The caller commits.  A bounced recipient is terminal: the row is marked
        ``failed`` and nothing is raised.  Any other delivery error is recorded
        as ``error`` and re-raised so the job is retried; ``error`` rows are
        picked up again on the next attempt.

        A dependent's email and letters go to their guardian unless the
        dependent has an address of their own; an edited template for the
        action replaces the built-in text.
        """
        if notification.delivery_status not in (DeliveryStatus.PENDING, DeliveryStatus.ERROR):
            return notification

        recipient = await db.get(User, notification.recipient_id) if notification.recipient_id else None
        contact = await guardian_service.contact_user(db, recipient)
        override = await email_template_service.override_for(db, notification.action)
        subject, body = render(notification.action, self.context_for(notification, recipient), override)
        details = dict(notification.details or {})
        notification.delivery_status = DeliveryStatus.SENDING
        sentry_breadcrumb("notification", "deliver", data={"id": notification.id, "channel": notification.channel.value})

        try:
            if notification.channel == NotificationChannel.EMAIL:
                address = details.get("to_email") or (await guardian_service.effective_email(db, recipient) if recipient else None)
                if contact is not None and not details.get("to_email") and contact.email_status != EmailStatus.ACTIVE:
                    raise BounceError(f"Recipient email is {contact.email_status.value}")
                if not address:
                    raise BounceError("Recipient has no email address")
                notification.message_id = await self.mailer.send(address, subject, body, tag=notification.action)
                notification.delivery_status = DeliveryStatus.SENT

            elif notification.channel == NotificationChannel.FAX:
                number = details.get("to_fax") or (recipient.fax if recipient else None)
                if not number:
                    raise BounceError("Recipient has no fax number")
                fax = await self.fax.send_pdf_fax(number, render_pdf(subject, body), f"{notification.action}.pdf")
                details["fax_sid"] = fax.get("sid")
                details["fax_status"] = fax.get("status")
                notification.message_id = fax.get("sid")
                notification.delivery_status = DeliveryStatus.SENT

            else:
                if contact is None:
                    raise BounceError("Letters require a recipient")
                item = await print_queue_service.queue_letter(
                    db,
                    contact,
                    notification.action,
                    subject,
                    body,
                    application_id=notification.notifiable_id if notification.notifiable_type == "Application" else None,
                )
                details["print_queue_item_id"] = item.id
                notification.delivery_status = DeliveryStatus.SENT

            notification.delivered_at = utcnow()
        except BounceError as e:
            logger.info("[notify] notification %s not delivered: %s", notification.id, e)
            details["error"] = str(e)
            notification.delivery_status = DeliveryStatus.FAILED
        except Exception as e:
            logger.error("[notify] delivery of notification %s failed: %s", notification.id, e)
            sentry_capture(e)
            details["error"] = str(e)
            notification.delivery_status = DeliveryStatus.ERROR
            notification.details = details
            await db.flush()
            raise

        notification.details = details
        await db.flush()
        return notification

    async def list_for(self, db: AsyncSession, user: User, unread_only: bool = False) -> List[Notification]:
        stmt = select(Notification).where(Notification.recipient_id == user.id)
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        result = await db.execute(stmt.order_by(Notification.created_at.desc()))
        return list(result.scalars().all())

    async def mark_read(self, db: AsyncSession, notification: Notification) -> Notification:
        if notification.read_at is None:
            notification.read_at = utcnow()
            await db.flush()
        return notification


notification_service = NotificationService()

__all__ = ["NotificationService", "notification_service", "BounceError", "choose_channel"]
