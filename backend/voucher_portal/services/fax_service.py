"""Outbound fax through the Twilio Programmable Fax REST API.

Twilio fetches the document from a URL, so the PDF is first written to
storage and exposed through a signed, short-lived download link
(``/documents/{key}?expires=..&signature=..``).
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from voucher_portal.core.config import settings
from voucher_portal.core.security import signed_document_url
from voucher_portal.services.storage_service import get_storage

logger = logging.getLogger(__name__)


class FaxError(Exception):
    pass


def format_phone_number(number: Optional[str]) -> Optional[str]:
    """Normalise a US number to E.164 (``+15555555555``); ``None`` when unusable."""
    if not number:
        return None
    if number.strip().startswith("+"):
        digits = re.sub(r"\D", "", number)
        return f"+{digits}" if len(digits) >= 10 else None
    digits = re.sub(r"\D", "", number)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


class FaxService:
    def __init__(self) -> None:
        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.from_number = format_phone_number(settings.TWILIO_FAX_FROM)
        self.api_url = settings.TWILIO_FAX_API_URL.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send_pdf_fax(self, to: str, pdf_bytes: bytes, filename: str = "document.pdf") -> Dict[str, Any]:
        """Upload ``pdf_bytes`` and ask Twilio to fax it; returns the fax resource."""
        to_number = format_phone_number(to)
        if not to_number:
            raise FaxError(f"Invalid fax number: {to}")
        if not self.configured:
            raise FaxError("Twilio fax is not configured")

        key = get_storage().save_bytes(pdf_bytes, "faxes", filename, "application/pdf")
        media_url = signed_document_url(key, expires_in=3600)
        async with httpx.AsyncClient(timeout=15, auth=(self.account_sid, self.auth_token)) as client:
            resp = await client.post(
                f"{self.api_url}/Faxes",
                data={
                    "To": to_number,
                    "From": self.from_number,
                    "MediaUrl": media_url,
                    "StatusCallback": f"{settings.PUBLIC_BASE_URL.rstrip('/')}/webhooks/twilio/fax_status",
                },
            )
        if resp.status_code >= 400:
            raise FaxError(f"Twilio rejected fax ({resp.status_code}): {resp.text[:200]}")
        data = resp.json()
        logger.info("[fax] queued sid=%s to=%s status=%s", data.get("sid"), to_number, data.get("status"))
        return data

    async def check_fax_status(self, fax_sid: str) -> Optional[str]:
        if not self.configured:
            return None
        async with httpx.AsyncClient(timeout=10, auth=(self.account_sid, self.auth_token)) as client:
            resp = await client.get(f"{self.api_url}/Faxes/{fax_sid}")
        if resp.status_code >= 400:
            logger.warning("[fax] status lookup failed sid=%s code=%s", fax_sid, resp.status_code)
            return None
        return resp.json().get("status")
