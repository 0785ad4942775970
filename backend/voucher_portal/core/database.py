"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application.  ``ALEMBIC_DATABASE_URL`` wins when present so
migrations can run against the owner role; otherwise ``DATABASE_URL`` is
used.  When neither is provided a local SQLite database may be used in
development if ``DB_DEV_FALLBACK_SQLITE`` is enabled.
"""

from __future__ import annotations

import logging
import os
from typing import AsyncGenerator, Dict, Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from voucher_portal.core.config import settings

logger = logging.getLogger(__name__)

# Track whether we fell back to SQLite during init
USING_SQLITE_FALLBACK: bool = False
LAST_DB_INIT_ERROR: Optional[str] = None

alembic_url = os.getenv("ALEMBIC_DATABASE_URL")
primary_db_url = settings.DATABASE_URL or os.getenv("DATABASE_URL")
db_url = alembic_url or primary_db_url

if not db_url:
    if not settings.DB_DEV_FALLBACK_SQLITE:
        raise RuntimeError(
            "No database URL provided via ALEMBIC_DATABASE_URL or DATABASE_URL; "
            "with DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
        )
    db_url = "sqlite+aiosqlite:///./voucher_portal.db"

engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)

try:
    url_obj = make_url(db_url)
except Exception:
    url_obj = None


def normalize_async_url(url: str) -> str:
    """Return ``url`` rewritten for an async driver (aiosqlite / psycopg)."""
    parsed = make_url(url)
    driver = parsed.drivername or ""
    if driver == "sqlite":
        return parsed.set(drivername="sqlite+aiosqlite").render_as_string(hide_password=False)
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(parsed.query or {})
        if not q.get("sslmode") and parsed.host not in (None, "localhost", "127.0.0.1"):
            q["sslmode"] = "require"
        return parsed.set(drivername="postgresql+psycopg", query=q).render_as_string(hide_password=False)
    return url


if url_obj is not None:
    db_url = normalize_async_url(db_url)
    if url_obj.drivername.startswith("sqlite") and url_obj.database in (None, "", ":memory:"):
        # In-memory SQLite must share one connection across sessions
        from sqlalchemy.pool import StaticPool

        engine_kwargs = dict(echo=False, poolclass=StaticPool, connect_args={"check_same_thread": False})

logger.info("Creating async engine for driver %s", make_url(db_url).drivername)
engine = create_async_engine(db_url, **engine_kwargs)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    Each session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def lock_row(db: AsyncSession, model, pk):
    """Re-read a row under ``SELECT ... FOR UPDATE`` and return the refreshed instance.

    Pending changes are flushed first so the refresh does not discard them.
    SQLite ignores the lock; the refresh still applies.
    """
    await db.flush()
    result = await db.execute(
        select(model).where(model.id == pk).with_for_update().execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def init_db() -> None:
    """Create all tables declared on ``Base``.

    When the primary connection fails in development and
    ``DB_DEV_FALLBACK_SQLITE`` is set, a local SQLite database is used instead.
    """
    global engine, AsyncSessionLocal, USING_SQLITE_FALLBACK, LAST_DB_INIT_ERROR
    try:
        async with engine.begin() as conn:
            # Import all models to ensure metadata is populated
            from voucher_portal.models import tables  # noqa: F401
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        LAST_DB_INIT_ERROR = str(e)
        if (settings.ENVIRONMENT or "development").lower() == "development" and settings.DB_DEV_FALLBACK_SQLITE:
            logger.warning(f"DB init failed ({e}); falling back to SQLite for development")
            engine = create_async_engine("sqlite+aiosqlite:///./voucher_portal.db", echo=False, pool_pre_ping=True)
            AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autocommit=False, autoflush=False)
            USING_SQLITE_FALLBACK = True
            async with engine.begin() as conn:
                from voucher_portal.models import tables  # noqa: F401
                await conn.run_sync(Base.metadata.create_all)
        else:
            raise


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine."""
    info: Dict[str, Any] = {
        "using_sqlite_fallback": USING_SQLITE_FALLBACK,
        "environment": (settings.ENVIRONMENT or "development"),
    }
    if LAST_DB_INIT_ERROR:
        info["last_db_init_error"] = LAST_DB_INIT_ERROR
    try:
        current = make_url(str(engine.url))
        info.update(
            {
                "drivername": current.drivername,
                "host": current.host,
                "port": current.port,
                "database": current.database,
                "url": current.render_as_string(hide_password=True),
            }
        )
    except Exception as ex:
        info.update({"error": f"unable to parse engine url: {ex}"})
    return info
