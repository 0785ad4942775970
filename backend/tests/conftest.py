from __future__ import annotations

import datetime as dt
import itertools
import sys
import time
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add backend folder to sys.path so `import voucher_portal...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from voucher_portal.api.dependencies import get_current_user, get_db_session  # noqa: E402
from voucher_portal.core.config import settings  # noqa: E402
from voucher_portal.core.database import Base  # noqa: E402
from voucher_portal.models import tables  # noqa: E402,F401
from voucher_portal.models.enums import (  # noqa: E402
    ApplicationStatus,
    UserStatus,
    UserType,
    VendorStatus,
)
from voucher_portal.models.tables import Application, User  # noqa: E402
from voucher_portal.services import cache, notification_service as notification_module  # noqa: E402
from voucher_portal.services.proof_attachment_service import ProofFile  # noqa: E402
from voucher_portal.utils.helpers import utcnow  # noqa: E402


class DummyPipeline:
    def __init__(self, client: "DummyRedis"):
        self.client = client
        self.ops = []

    def set(self, *args, **kwargs):
        self.ops.append(("set", args, kwargs))
        return self

    def incrby(self, *args, **kwargs):
        self.ops.append(("incrby", args, kwargs))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.client, name)(*args, **kwargs))
        self.ops = []
        return results


class DummyRedis:
    """In-memory stand-in for the redis.asyncio client (string values)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expires: dict[str, float] = {}

    def _alive(self, key):
        deadline = self.expires.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.store.pop(key, None)
            self.expires.pop(key, None)
        return key in self.store

    async def get(self, key):
        return self.store.get(key) if self._alive(key) else None

    async def set(self, key, value, ex=None, nx=False):
        if nx and self._alive(key):
            return None
        self.store[key] = str(value)
        if ex is not None:
            self.expires[key] = time.monotonic() + ex
        else:
            self.expires.pop(key, None)
        return True

    async def incrby(self, key, amount):
        current = int(self.store[key]) if self._alive(key) else 0
        self.store[key] = str(current + amount)
        return current + amount

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def expire(self, key, seconds):
        if not self._alive(key):
            return False
        self.expires[key] = time.monotonic() + seconds
        return True

    async def ttl(self, key):
        if not self._alive(key):
            return -2
        deadline = self.expires.get(key)
        return -1 if deadline is None else int(deadline - time.monotonic())

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.store.pop(key, None)
            self.expires.pop(key, None)
        return removed

    def pipeline(self):
        return DummyPipeline(self)


@pytest.fixture(autouse=True)
def redis_client():
    client = DummyRedis()
    cache.set_redis(client)
    yield client
    cache.set_redis(None)


@pytest.fixture(autouse=True)
def storage_dir(tmp_path, monkeypatch):
    path = tmp_path / "storage"
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "filesystem")
    monkeypatch.setattr(settings, "STORAGE_DIRECTORY", str(path))
    return path


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Notification ids handed to the delivery actor."""
    sent: list[int] = []
    monkeypatch.setattr(notification_module, "enqueue_delivery", sent.append)
    return sent


@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session = async_sessionmaker(engine, expire_on_commit=False)()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


_counter = itertools.count(1)


@pytest.fixture
def make_user(db):
    async def _make(user_type: UserType = UserType.CONSTITUENT, **fields) -> User:
        n = next(_counter)
        defaults = {
            "email": f"{user_type.value}{n}@example.com",
            "first_name": "Test",
            "last_name": f"User{n}",
            "status": UserStatus.ACTIVE,
        }
        if user_type == UserType.CONSTITUENT:
            defaults.update(hearing_disability=True, date_of_birth=dt.date(1980, 1, 15))
        if user_type == UserType.VENDOR:
            defaults.update(business_name=f"Vendor {n} LLC", vendor_status=VendorStatus.APPROVED)
        defaults.update(fields)
        user = User(type=user_type, **defaults)
        db.add(user)
        await db.flush()
        return user

    return _make


@pytest.fixture
def make_application(db):
    async def _make(constituent: User, **fields) -> Application:
        defaults = {
            "status": ApplicationStatus.IN_PROGRESS,
            "household_size": 2,
            "annual_income": Decimal("30000.00"),
            "maryland_resident": True,
            "medical_provider_name": "Dr. Smith",
            "medical_provider_phone": "410-555-0100",
            "medical_provider_email": "dr.smith@clinic.example.com",
            "application_date": utcnow(),
        }
        defaults.update(fields)
        application = Application(user_id=constituent.id, **defaults)
        db.add(application)
        await db.flush()
        return application

    return _make


@pytest.fixture
def pdf_file():
    return ProofFile(filename="statement.pdf", content_type="application/pdf", data=b"%PDF-1.4\n" + b"0" * 2048)


@pytest.fixture
def client_for(db):
    """Build an ``httpx.AsyncClient`` around the given routers.

    The request handlers share the test's session, so commit fixtures
    before calling a route that may roll back.  ``user`` (when given)
    replaces bearer-token authentication.
    """

    def _make(*routers, user: User | None = None) -> httpx.AsyncClient:
        app = FastAPI()
        for router in routers:
            app.include_router(router)

        async def _db():
            yield db

        app.dependency_overrides[get_db_session] = _db
        if user is not None:
            user_id = user.id

            # A handler rollback expires every object in the session.
            async def _user():
                return await db.get(User, user_id)

            app.dependency_overrides[get_current_user] = _user
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    return _make
