"""Inbound email routing.

Messages stored by the Postmark ingress are dispatched to a mailbox by the
local part of their recipient address.
"""

from __future__ import annotations

import logging
import re
from email.utils import getaddresses
from typing import Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.observability import sentry_set_tags
from voucher_portal.models.enums import InboundEmailStatus
from voucher_portal.models.tables import InboundEmail
from voucher_portal.utils.helpers import utcnow
from .base import Bounced, Mailbox, ParsedEmail
from .medical_certification import MedicalCertificationMailbox
from .proof_submission import ProofSubmissionMailbox

logger = logging.getLogger(__name__)

ROUTES = (
    (re.compile(r"^proof@", re.IGNORECASE), ProofSubmissionMailbox),
    (re.compile(r"^medical-cert(\+\d+)?@", re.IGNORECASE), MedicalCertificationMailbox),
)


def route(recipients) -> Optional[Type[Mailbox]]:
    for address in recipients:
        for pattern, mailbox in ROUTES:
            if pattern.search(address):
                return mailbox
    return None


async def process_inbound_email(db: AsyncSession, inbound_email: InboundEmail) -> InboundEmail:
    """Parse, route and process one stored message.  The caller commits."""
    if inbound_email.status not in (InboundEmailStatus.PENDING, InboundEmailStatus.FAILED):
        return inbound_email
    mail = ParsedEmail.from_raw(inbound_email.raw_email)
    # Postmark's envelope fields cover messages whose headers lack them.
    if inbound_email.recipient:
        for _, addr in getaddresses([inbound_email.recipient]):
            if addr and addr.lower() not in mail.recipients:
                mail.recipients.append(addr.lower())
    if mail.sender is None and inbound_email.sender:
        envelope_senders = [addr for _, addr in getaddresses([inbound_email.sender]) if addr]
        mail.sender = envelope_senders[0].lower() if envelope_senders else None
    inbound_email.sender = inbound_email.sender or mail.sender
    inbound_email.subject = inbound_email.subject or mail.subject
    inbound_email.recipient = inbound_email.recipient or (mail.recipients[0] if mail.recipients else None)

    mailbox = route(mail.recipients)
    if mailbox is None:
        logger.info("[mailbox] inbound email %s unroutable (%s)", inbound_email.id, ", ".join(mail.recipients))
        inbound_email.status = InboundEmailStatus.BOUNCED
        inbound_email.bounce_reason = "unroutable"
        inbound_email.processed_at = utcnow()
        await db.flush()
        return inbound_email

    sentry_set_tags({"mailbox": mailbox.name, "inbound_email_id": inbound_email.id})
    return await mailbox(db, inbound_email, mail).run()


__all__ = [
    "Bounced",
    "Mailbox",
    "ParsedEmail",
    "ProofSubmissionMailbox",
    "MedicalCertificationMailbox",
    "route",
    "process_inbound_email",
]
