"""Outbound email through the Postmark HTTP API."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

import httpx

from voucher_portal.core.config import settings

logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    pass


class MailService:
    """Send plain text email.

    Without ``POSTMARK_API_TOKEN`` (local development) messages are logged
    instead of sent and a synthetic message id is returned.
    """

    def __init__(self, api_token: Optional[str] = None, api_url: Optional[str] = None) -> None:
        self.api_token = api_token if api_token is not None else settings.POSTMARK_API_TOKEN
        self.api_url = (api_url or settings.POSTMARK_API_URL).rstrip("/")

    async def send(self, to: str, subject: str, body: str, tag: Optional[str] = None) -> str:
        """Send a message and return the provider message id."""
        if not self.api_token:
            message_id = f"dev-{uuid.uuid4().hex}"
            logger.info("[mail] (not sent, no POSTMARK_API_TOKEN) to=%s subject=%r id=%s", to, subject, message_id)
            return message_id

        payload = {
            "From": settings.MAIL_FROM,
            "To": to,
            "Subject": subject,
            "TextBody": body,
            "MessageStream": "outbound",
        }
        if tag:
            payload["Tag"] = tag
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(
                f"{self.api_url}/email",
                json=payload,
                headers={
                    "Accept": "application/json",
                    "X-Postmark-Server-Token": self.api_token,
                },
            )
        if resp.status_code != 200:
            raise MailDeliveryError(f"Postmark rejected message ({resp.status_code}): {resp.text[:200]}")
        data = resp.json()
        if data.get("ErrorCode"):
            raise MailDeliveryError(f"Postmark error {data.get('ErrorCode')}: {data.get('Message')}")
        message_id = data.get("MessageID") or ""
        logger.info("[mail] sent to=%s subject=%r id=%s", to, subject, message_id)
        return message_id
