"""Password hashing, access tokens and signed links.

Access tokens are HS256 JWTs signed with ``SECRET_KEY`` and carry the user
id (``sub``) and role.  Password reset tokens and document download links
are HMAC-signed strings; a reset token also covers the current password
digest so it stops working once the password changes.
"""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import secrets
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from jose import JWTError, jwt

from voucher_portal.core.config import settings

ALGORITHM = "HS256"
PBKDF2_ITERATIONS = 260_000


class TokenError(Exception):
    pass


# -----------------------------------------------------------------------------
# Passwords


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, password_digest: Optional[str]) -> bool:
    if not password_digest:
        return False
    try:
        algorithm, iterations, salt, expected = password_digest.split("$", 3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


# -----------------------------------------------------------------------------
# Access tokens


def create_access_token(user_id: int, role: str, expires_minutes: Optional[int] = None) -> Tuple[str, int]:
    """Return ``(token, expires_in_seconds)``."""
    minutes = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM), minutes * 60


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise TokenError(f"Invalid token: {e}") from e
    if not payload.get("sub"):
        raise TokenError("Token missing subject")
    return payload


# -----------------------------------------------------------------------------
# HMAC helpers


def _sign(message: str) -> str:
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def create_password_reset_token(user_id: int, password_digest: Optional[str], expires_minutes: Optional[int] = None) -> str:
    expires = int(time.time()) + 60 * (expires_minutes or settings.PASSWORD_RESET_EXPIRE_MINUTES)
    signature = _sign(f"reset:{user_id}:{expires}:{password_digest or ''}")
    raw = f"{user_id}:{expires}:{signature}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def parse_password_reset_token(token: str) -> Tuple[int, int, str]:
    """Decode a reset token into ``(user_id, expires, signature)`` without verifying it."""
    try:
        padded = token + "=" * (-len(token) % 4)
        user_id, expires, signature = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8").split(":", 2)
        return int(user_id), int(expires), signature
    except (ValueError, UnicodeDecodeError) as e:
        raise TokenError("Malformed reset token") from e


def verify_password_reset_token(token: str, password_digest: Optional[str]) -> int:
    """Return the user id for a valid, unexpired, unused token."""
    user_id, expires, signature = parse_password_reset_token(token)
    if expires < int(time.time()):
        raise TokenError("Reset token expired")
    expected = _sign(f"reset:{user_id}:{expires}:{password_digest or ''}")
    if not hmac.compare_digest(expected, signature):
        raise TokenError("Invalid reset token")
    return user_id


def sign_document(key: str, expires: int) -> str:
    return _sign(f"document:{key}:{expires}")


def verify_document_signature(key: str, expires: int, signature: str) -> bool:
    if expires < int(time.time()):
        return False
    return hmac.compare_digest(sign_document(key, expires), signature)


def signed_document_url(key: str, expires_in: int = 3600) -> str:
    expires = int(time.time()) + expires_in
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    return f"{base}/documents/{quote(key)}?expires={expires}&signature={sign_document(key, expires)}"
