from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.request_validator import RequestValidator

from voucher_portal.api.dependencies import get_db_session
from voucher_portal.core.config import get_webhook_secret_list, settings
from voucher_portal.core.observability import sentry_breadcrumb, sentry_capture, sentry_metric_inc, sentry_set_tags
from voucher_portal.core.security import hmac_sha256_hex
from voucher_portal.models.enums import DeliveryStatus, EmailStatus
from voucher_portal.models.tables import Application, Notification, User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.cache import claim_once
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

FAX_STATUS_MAP = {
    "queued": "sending",
    "processing": "sending",
    "sending": "sending",
    "delivered": "delivered",
    "received": "received",
    "no-answer": "failed",
    "busy": "failed",
    "failed": "failed",
    "canceled": "failed",
}

EMAIL_EVENT_DEDUP_TTL = 7 * 24 * 3600


def verify_hex_signature(body: bytes, signature: Optional[str], secrets: list[str]) -> bool:
    if not signature:
        return False
    return any(hmac.compare_digest(hmac_sha256_hex(secret, body), signature) for secret in secrets)


@router.post("/twilio/fax_status")
async def twilio_fax_status(request: Request, db: AsyncSession = Depends(get_db_session)):
    form = await request.form()
    params = {k: v for k, v in form.items() if isinstance(v, str)}

    if settings.TWILIO_AUTH_TOKEN:
        validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
        if not validator.validate(str(request.url), params, request.headers.get("X-Twilio-Signature", "")):
            logger.warning("[twilio] invalid signature for fax status callback")
            sentry_metric_inc("twilio.webhook.invalid_signature")
            raise HTTPException(status_code=403, detail="Invalid signature")

    fax_sid = params.get("FaxSid")
    raw_status = (params.get("Status") or "").lower()
    sentry_set_tags({"fax_sid": fax_sid, "fax_status": raw_status})

    try:
        notification = None
        if fax_sid:
            notification = (
                await db.execute(select(Notification).where(Notification.message_id == fax_sid))
            ).scalars().first()
        if notification is None:
            logger.info("[twilio] no notification for fax sid=%s", fax_sid)
            return {"success": False, "error": "Notification not found"}

        mapped = FAX_STATUS_MAP.get(raw_status, "unknown")
        details = dict(notification.details or {})
        details["fax_status"] = mapped
        details["fax_status_updated_at"] = utcnow().isoformat()
        details["fax_status_details"] = {k: v for k, v in params.items() if k not in ("AccountSid",)}
        notification.details = details
        if mapped in ("delivered", "received"):
            notification.delivery_status = DeliveryStatus.DELIVERED
            notification.delivered_at = utcnow()
        elif mapped == "failed":
            notification.delivery_status = DeliveryStatus.FAILED
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("[twilio] fax status update failed sid=%s: %s", fax_sid, e)
        sentry_capture(e)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    sentry_breadcrumb("webhook", "fax_status", data={"notification_id": notification.id, "status": mapped})
    logger.info("[twilio] fax sid=%s status=%s -> %s", fax_sid, raw_status, mapped)
    return {"success": True}


EMAIL_EVENT_DETAIL_KEYS = {
    "bounce": ("type", "diagnostics"),
    "complaint": ("type", "feedback_id"),
}


def _validate_email_event(payload: Any) -> Optional[str]:
    """Return an error message for a malformed email event, else None.

    ``event`` selects the handler; ``type`` is the provider's subtype
    (``permanent``, ``abuse`` and so on).
    """
    if not isinstance(payload, dict):
        return "Payload must be an object"
    for key in ("email", "event", "type"):
        if not payload.get(key):
            return f"Missing required field: {key}"
    event = payload["event"]
    required = EMAIL_EVENT_DETAIL_KEYS.get(event) if isinstance(event, str) else None
    if required is None:
        return f"Unhandled event type: {event}"
    detail = payload.get(event)
    if not isinstance(detail, dict) or not all(k in detail for k in required):
        return f"{event.capitalize()} events require " + " and ".join(f"{event}.{k}" for k in required)
    return None


async def _apply_email_event(db: AsyncSession, payload: Dict[str, Any]) -> None:
    email = str(payload["email"]).strip().lower()
    complaint = payload["event"] == "complaint"
    new_status = EmailStatus.COMPLAINED if complaint else EmailStatus.BOUNCED
    action = "email_complaint" if complaint else "email_bounced"
    detail = dict(payload[payload["event"]], subtype=payload["type"])

    users = (await db.execute(select(User).where(func.lower(User.email) == email))).scalars().all()
    for user in users:
        user.email_status = new_status
        await audit_service.log(db, action=action, actor=None, auditable=user, metadata={"email": email, "detail": detail})

    applications = (
        await db.execute(select(Application).where(func.lower(Application.medical_provider_email) == email))
    ).scalars().all()
    for application in applications:
        application.medical_provider_email_status = new_status
        await audit_service.log(
            db,
            action=action,
            actor=None,
            auditable=application,
            metadata={"email": email, "recipient": "medical_provider", "detail": detail},
        )
    logger.info("[email_events] %s for %s (users=%d applications=%d)", action, email, len(users), len(applications))


@router.post("/email_events")
async def email_events(request: Request, db: AsyncSession = Depends(get_db_session)):
    body = await request.body()
    if not verify_hex_signature(body, request.headers.get("X-Webhook-Signature"), get_webhook_secret_list()):
        sentry_metric_inc("email_events.invalid_signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=422, detail="Invalid JSON")
    error = _validate_email_event(payload)
    if error:
        raise HTTPException(status_code=422, detail=error)

    dedup_key = f"email_events:{hashlib.sha256(body).hexdigest()}"
    if not await claim_once(dedup_key, EMAIL_EVENT_DEDUP_TTL):
        logger.info("[email_events] duplicate delivery ignored")
        sentry_metric_inc("email_events.duplicate")
        return {"success": True, "duplicate": True}

    sentry_metric_inc("email_events.received", tags={"event": payload["event"]})
    try:
        await _apply_email_event(db, payload)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("[email_events] failed to apply %s for %s: %s", payload["event"], payload["email"], e)
        sentry_capture(e)
    return {"success": True}
