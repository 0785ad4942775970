"""Printed letters and faxed documents.

Messages are rendered into a simple one-column PDF with reportlab.  Letters
for constituents who prefer postal mail are stored and placed in the print
queue, where administrators download them and mark them printed.
"""

from __future__ import annotations

import logging
import textwrap
from io import BytesIO
from typing import Iterable, List, Optional

from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.models.enums import PrintQueueStatus
from voucher_portal.models.tables import PrintQueueItem, User
from voucher_portal.services.storage_service import get_storage
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_WRAP = 90


def render_pdf(subject: str, body: str, recipient: Optional[User] = None) -> bytes:
    """Render a letter with an address block, subject line and wrapped body."""
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    width, height = letter
    y = height - inch

    def line(text: str, font: str = "Helvetica", size: int = 10, step: int = 14) -> None:
        nonlocal y
        if y < inch:
            c.showPage()
            y = height - inch
        c.setFont(font, size)
        c.drawString(inch, y, text)
        y -= step

    line(settings.ORGANIZATION_NAME, "Helvetica-Bold", 14, 20)
    line(utcnow().strftime("%B %d, %Y"))
    y -= 10
    if recipient is not None:
        line(recipient.full_name)
        if recipient.has_address:
            line(recipient.physical_address_1)
            if recipient.physical_address_2:
                line(recipient.physical_address_2)
            line(f"{recipient.city}, {recipient.state} {recipient.zip_code}")
        y -= 10
    line(subject, "Helvetica-Bold", 12, 20)
    c.line(inch, y + 8, width - inch, y + 8)
    for paragraph in body.splitlines():
        if not paragraph.strip():
            y -= 8
            continue
        for chunk in textwrap.wrap(paragraph, _WRAP):
            line(chunk)
    c.save()
    return buf.getvalue()


class PrintQueueService:
    async def queue_letter(
        self,
        db: AsyncSession,
        constituent: User,
        letter_type: str,
        subject: str,
        body: str,
        application_id: Optional[int] = None,
    ) -> PrintQueueItem:
        pdf = render_pdf(subject, body, constituent)
        key = get_storage().save_bytes(pdf, "letters", f"{letter_type}_{constituent.id}.pdf", "application/pdf")
        item = PrintQueueItem(
            constituent_id=constituent.id,
            application_id=application_id,
            letter_type=letter_type,
            status=PrintQueueStatus.PENDING,
            pdf_key=key,
        )
        db.add(item)
        await db.flush()
        logger.info("[letter] queued %s for user %s (item %s)", letter_type, constituent.id, item.id)
        return item

    async def list(self, db: AsyncSession, status: Optional[PrintQueueStatus] = None) -> List[PrintQueueItem]:
        stmt = select(PrintQueueItem).order_by(PrintQueueItem.created_at.desc())
        if status is not None:
            stmt = stmt.where(PrintQueueItem.status == status)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def mark_printed(self, db: AsyncSession, item_ids: Iterable[int], admin: User) -> List[PrintQueueItem]:
        """Mark the given items printed; unknown or already printed ids are skipped."""
        ids = list(item_ids)
        if not ids:
            return []
        result = await db.execute(
            select(PrintQueueItem).where(
                PrintQueueItem.id.in_(ids), PrintQueueItem.status == PrintQueueStatus.PENDING
            )
        )
        items = list(result.scalars().all())
        now = utcnow()
        for item in items:
            item.status = PrintQueueStatus.PRINTED
            item.printed_at = now
            item.admin_id = admin.id
        await db.flush()
        return items


print_queue_service = PrintQueueService()
