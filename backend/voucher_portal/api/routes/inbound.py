"""Postmark inbound email ingress.

Postmark posts each inbound message as JSON with the full MIME source in
``RawEmail``.  The message is stored as-is and handed to the worker, which
routes it to a mailbox.
"""

from __future__ import annotations

import base64
import hmac
import json
import logging
import uuid
from email import message_from_string, policy
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_db_session
from voucher_portal.core import tasks
from voucher_portal.core.config import get_inbound_secret_list
from voucher_portal.core.observability import sentry_metric_inc
from voucher_portal.core.security import hmac_sha256_hex
from voucher_portal.models.tables import InboundEmail

logger = logging.getLogger(__name__)

router = APIRouter(tags=["inbound"])

BASIC_AUTH_USER = "actionmailbox"


def _basic_auth_password(header: Optional[str]) -> Optional[str]:
    if not header or not header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header.split(" ", 1)[1]).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    user, _, password = decoded.partition(":")
    return password if user == BASIC_AUTH_USER else None


def is_authentic(body: bytes, signature: Optional[str], authorization: Optional[str]) -> bool:
    secrets = get_inbound_secret_list()
    if not secrets:
        return False
    if signature:
        for secret in secrets:
            if hmac.compare_digest(hmac_sha256_hex(secret, body), signature):
                return True
    password = _basic_auth_password(authorization)
    if password is not None:
        return any(hmac.compare_digest(password, secret) for secret in secrets)
    return False


def _message_id(payload: dict, raw_email: str) -> str:
    message_id = payload.get("MessageID")
    if not message_id:
        try:
            message_id = message_from_string(raw_email, policy=policy.default).get("Message-ID")
        except Exception:
            message_id = None
    return str(message_id).strip("<> ") if message_id else str(uuid.uuid4())


@router.post("/rails/action_mailbox/postmark/inbound_emails")
@router.post("/inbound/postmark")
async def postmark_inbound(request: Request, db: AsyncSession = Depends(get_db_session)):
    body = await request.body()
    if not is_authentic(body, request.headers.get("X-Postmark-Signature"), request.headers.get("Authorization")):
        logger.warning("[inbound] rejected unauthenticated postmark request")
        sentry_metric_inc("inbound.unauthorized")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=422, detail="Invalid JSON")
    raw_email = payload.get("RawEmail") if isinstance(payload, dict) else None
    if not raw_email:
        raise HTTPException(status_code=422, detail="RawEmail is required")

    message_id = _message_id(payload, raw_email)
    existing = (
        await db.execute(select(InboundEmail).where(InboundEmail.message_id == message_id))
    ).scalars().first()
    if existing is not None:
        logger.info("[inbound] duplicate message %s ignored", message_id)
        return {"status": "duplicate", "id": existing.id}

    inbound = InboundEmail(
        message_id=message_id,
        raw_email=raw_email,
        sender=(payload.get("From") or None),
        subject=(payload.get("Subject") or None),
        recipient=(payload.get("OriginalRecipient") or payload.get("To") or None),
    )
    db.add(inbound)
    await db.commit()

    try:
        tasks.process_inbound_email.send(inbound.id)
    except Exception as e:
        logger.error("[inbound] failed to enqueue inbound email %s: %s", inbound.id, e)
    sentry_metric_inc("inbound.received")
    logger.info("[inbound] stored message %s as inbound email %s", message_id, inbound.id)
    return {"status": "received", "id": inbound.id}
