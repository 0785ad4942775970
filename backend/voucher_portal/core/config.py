"""Configuration management.

Settings are read from environment variables with sensible defaults.
``.env`` support is implemented by loading files from the repository root
in a defined order.  You can override any value via environment variables.

Program rules (voucher values, waiting periods, rate limits) are *not*
configured here; they live in the ``policies`` table so administrators can
change them at runtime.  See ``voucher_portal.services.policy_service``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  As a last
# resort, a .env in the backend directory may be used.  Files are loaded in
# order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_LOCAL_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_LOCAL_ENV) and _LOCAL_ENV not in _candidate_envs:
    _candidate_envs.append(_LOCAL_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Any attribute defined here can be overridden by setting the
    corresponding environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "Voucher Portal"
    ORGANIZATION_NAME: str = Field(default="Assistive Technology Voucher Program")
    SUPPORT_EMAIL: str = Field(default="support@example.org")
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="documents")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Auth
    # Disable auth bypass by default.  Override in .env only when running locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    SECRET_KEY: str = Field(default="changeme")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60 * 12)
    PASSWORD_RESET_EXPIRE_MINUTES: int = Field(default=20)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )
    FRONTEND_BASE_URL: str = Field(default="http://localhost:3000")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Outbound mail (Postmark)
    POSTMARK_API_URL: str = Field(default="https://api.postmarkapp.com")
    POSTMARK_API_TOKEN: Optional[str] = Field(default=None)
    MAIL_FROM: str = Field(default="no-reply@example.org")

    # Inbound mail (Postmark inbound webhook)
    POSTMARK_INBOUND_PASSWORD: Optional[str] = Field(default=None)
    POSTMARK_WEBHOOK_TOKEN: Optional[str] = Field(default=None)
    INBOUND_EMAIL_DOMAIN: str = Field(default="inbound.example.org")

    # Fax (Twilio)
    TWILIO_ACCOUNT_SID: Optional[str] = Field(default=None)
    TWILIO_AUTH_TOKEN: Optional[str] = Field(default=None)
    TWILIO_FAX_FROM: Optional[str] = Field(default=None)
    TWILIO_FAX_API_URL: str = Field(default="https://fax.twilio.com/v1")
    PUBLIC_BASE_URL: str = Field(default="http://localhost:8000")

    # Worker cron (voucher expiration sweep, invoice generation)
    WORKER_CRON_ENABLED: bool = Field(default=False)
    EXPIRATION_SWEEP_INTERVAL_SECONDS: int = Field(default=24 * 3600)
    INVOICE_GENERATION_INTERVAL_SECONDS: int = Field(default=14 * 24 * 3600)

    # Actor for automated changes
    SYSTEM_USER_EMAIL: str = Field(default="system@voucher-portal.local")

    # Dependents sharing a guardian's address get a unique placeholder here
    DEPENDENT_EMAIL_DOMAIN: str = Field(default="dependents.voucher-portal.local")

    # Generic signed webhooks (email events)
    WEBHOOK_SECRET: Optional[str] = Field(default=None)
    WEBHOOK_SECRETS: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. WEBHOOK_SECRETS (comma separated, ordered; allows rotation)
    2. Fallback to singular WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.WEBHOOK_SECRET:
        secrets.append(settings.WEBHOOK_SECRET.strip())
    return secrets


def get_inbound_secret_list() -> list[str]:
    """Secrets accepted for Postmark inbound signatures (password first)."""
    return [s for s in (settings.POSTMARK_INBOUND_PASSWORD, settings.POSTMARK_WEBHOOK_TOKEN) if s]
