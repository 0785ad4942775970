from __future__ import annotations

import logging
import mimetypes

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from voucher_portal.core.security import verify_document_signature
from voucher_portal.services.storage_service import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])


@router.get("/documents/{key:path}")
async def get_document(key: str, expires: int, signature: str):
    """Serve a stored document behind a time-limited signed URL."""
    if not verify_document_signature(key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    try:
        data = get_storage().load(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="Document not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
