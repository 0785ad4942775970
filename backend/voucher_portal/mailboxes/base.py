"""Parsed inbound messages and the mailbox base class.

A mailbox runs its ``before_processing`` checks in order; any check may call
:meth:`Mailbox.bounce`, which records the failure and raises :class:`Bounced`
so ``process`` never runs for that message.
"""

from __future__ import annotations

import email
import logging
from dataclasses import dataclass, field
from email import policy
from email.utils import getaddresses
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.models.enums import InboundEmailStatus
from voucher_portal.models.tables import InboundEmail
from voucher_portal.services.proof_attachment_service import ProofFile
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class Bounced(Exception):
    """Processing stopped; the inbound email has been marked bounced."""

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type


@dataclass
class ParsedEmail:
    sender: Optional[str]
    recipients: List[str]
    subject: str
    body: str
    message_id: Optional[str]
    attachments: List[ProofFile] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: str) -> "ParsedEmail":
        msg = email.message_from_string(raw, policy=policy.default)
        senders = [addr for _, addr in getaddresses(msg.get_all("From", [])) if addr]
        recipients = []
        for header in ("To", "Cc", "Delivered-To", "X-Original-To"):
            for _, addr in getaddresses(msg.get_all(header, [])):
                if addr and addr.lower() not in recipients:
                    recipients.append(addr.lower())

        body = ""
        part = msg.get_body(preferencelist=("plain", "html"))
        if part is not None:
            body = part.get_content()

        attachments = []
        for att in msg.iter_attachments():
            data = att.get_payload(decode=True) or b""
            attachments.append(
                ProofFile(filename=att.get_filename() or "attachment", content_type=att.get_content_type(), data=data)
            )

        return cls(
            sender=senders[0].lower() if senders else None,
            recipients=recipients,
            subject=str(msg.get("Subject") or ""),
            body=body,
            message_id=(msg.get("Message-ID") or "").strip("<> ") or None,
            attachments=attachments,
        )


class Mailbox:
    """Subclasses set ``before_processing`` to a tuple of method names."""

    name = "mailbox"
    before_processing: tuple = ()

    def __init__(self, db: AsyncSession, inbound_email: InboundEmail, mail: ParsedEmail) -> None:
        self.db = db
        self.inbound_email = inbound_email
        self.mail = mail

    async def run(self) -> InboundEmail:
        self.inbound_email.mailbox = self.name
        self.inbound_email.status = InboundEmailStatus.PROCESSING
        await self.db.flush()
        try:
            for check in self.before_processing:
                await getattr(self, check)()
            await self.process()
        except Bounced as e:
            logger.info(
                "[mailbox] %s bounced inbound email %s: %s (%s)",
                self.name, self.inbound_email.id, e.error_type, e,
            )
            return self.inbound_email
        self.inbound_email.status = InboundEmailStatus.DELIVERED
        self.inbound_email.processed_at = utcnow()
        await self.db.flush()
        return self.inbound_email

    async def process(self) -> None:
        raise NotImplementedError

    async def bounce(self, error_type: str, message: str) -> None:
        await self.record_bounce(error_type, message)
        self.inbound_email.status = InboundEmailStatus.BOUNCED
        self.inbound_email.bounce_reason = error_type
        self.inbound_email.processed_at = utcnow()
        await self.db.flush()
        raise Bounced(error_type, message)

    async def record_bounce(self, error_type: str, message: str) -> None:
        """Mailbox-specific audit event and sender notification."""


__all__ = ["Bounced", "Mailbox", "ParsedEmail"]
