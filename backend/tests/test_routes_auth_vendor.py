from __future__ import annotations

from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select

from voucher_portal.api.routes.auth import router as auth_router
from voucher_portal.api.routes.documents import router as documents_router
from voucher_portal.api.routes.vendor import router as vendor_router
from voucher_portal.core.security import hash_password, signed_document_url
from voucher_portal.models.enums import ApplicationStatus, UserType
from voucher_portal.models.tables import Notification
from voucher_portal.services.storage_service import get_storage
from voucher_portal.services.voucher_service import voucher_service


@pytest.mark.asyncio
async def test_register_then_me(db, client_for):
    async with client_for(auth_router) as client:
        resp = await client.post(
            "/auth/register",
            json={
                "email": "New.Person@Example.com",
                "first_name": "New",
                "last_name": "Person",
                "password": "longenough",
                "hearing_disability": True,
            },
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["user"]["email"] == "new.person@example.com"
        assert body["user"]["type"] == "constituent"

        me = await client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.status_code == 200
        assert me.json()["id"] == body["user"]["id"]

        dup = await client.post(
            "/auth/register",
            json={"email": "new.person@example.com", "first_name": "A", "last_name": "B", "password": "longenough"},
        )
        assert dup.status_code == 422

        assert (await client.get("/auth/me")).status_code == 401


@pytest.mark.asyncio
async def test_sign_in_locks_after_failed_attempts(db, make_user, client_for):
    user = await make_user(email="lock@example.com", password_digest=hash_password("correct-horse"))
    await db.commit()
    async with client_for(auth_router) as client:
        ok = await client.post("/auth/sign_in", json={"email": "lock@example.com", "password": "correct-horse"})
        assert ok.status_code == 200
        for _ in range(5):
            bad = await client.post("/auth/sign_in", json={"email": "lock@example.com", "password": "nope"})
            assert bad.status_code == 401
        locked = await client.post("/auth/sign_in", json={"email": "lock@example.com", "password": "correct-horse"})
        assert locked.status_code == 423
    assert user.locked_at is not None


@pytest.mark.asyncio
async def test_password_reset_flow(db, make_user, client_for):
    await make_user(email="forgot@example.com", password_digest=hash_password("old-password"))
    await db.commit()
    async with client_for(auth_router) as client:
        resp = await client.post("/auth/password_reset", json={"email": "forgot@example.com"})
        assert resp.status_code == 202
        unknown = await client.post("/auth/password_reset", json={"email": "nobody@example.com"})
        assert unknown.json() == resp.json()

        [notice] = (
            await db.execute(select(Notification).where(Notification.action == "password_reset"))
        ).scalars().all()
        token = parse_qs(urlparse(notice.details["reset_url"]).query)["token"][0]

        mismatch = await client.post(
            "/auth/password_reset/confirm",
            json={"token": token, "password": "new-password", "password_confirmation": "other-password"},
        )
        assert mismatch.status_code == 422
        done = await client.post(
            "/auth/password_reset/confirm",
            json={"token": token, "password": "new-password", "password_confirmation": "new-password"},
        )
        assert done.status_code == 200
        # The token is tied to the old password.
        reused = await client.post(
            "/auth/password_reset/confirm",
            json={"token": token, "password": "third-password", "password_confirmation": "third-password"},
        )
        assert reused.status_code == 422

        signed_in = await client.post("/auth/sign_in", json={"email": "forgot@example.com", "password": "new-password"})
        assert signed_in.status_code == 200


@pytest.mark.asyncio
async def test_vendor_verify_and_redeem(db, make_user, make_application, client_for):
    constituent = await make_user()
    application = await make_application(constituent, status=ApplicationStatus.APPROVED)
    voucher = await voucher_service.issue(db, application)
    vendor = await make_user(UserType.VENDOR)
    await db.commit()
    code = voucher.code

    async with client_for(vendor_router, user=vendor) as client:
        assert (await client.get("/vendor/vouchers/NOPE00000000")).status_code == 404

        lookup = await client.get(f"/vendor/vouchers/{code.lower()}")
        assert lookup.status_code == 200
        assert lookup.json()["verified"] is False
        assert lookup.json()["redeemable"] is True

        early = await client.post(f"/vendor/vouchers/{code}/redeem", json={"amount": "25.00"})
        assert early.status_code == 422

        wrong = await client.post(f"/vendor/vouchers/{code}/verify", json={"date_of_birth": "02/02/1980"})
        assert wrong.json() == {"success": False, "message_key": "dob_verification_failed", "attempts_left": 2}
        right = await client.post(f"/vendor/vouchers/{code}/verify", json={"date_of_birth": "1980-01-15"})
        assert right.json()["success"] is True

        redeemed = await client.post(f"/vendor/vouchers/{code}/redeem", json={"amount": "25.00"})
        assert redeemed.status_code == 201
        assert Decimal(redeemed.json()["amount"]) == Decimal("25.00")
        # Each verification covers a single redemption.
        again = await client.post(f"/vendor/vouchers/{code}/redeem", json={"amount": "25.00"})
        assert again.status_code == 422

        listing = await client.get("/vendor/transactions")
        assert [t["reference_number"] for t in listing.json()] == [redeemed.json()["reference_number"]]
        totals = await client.get("/vendor/transactions/totals")
        assert Decimal(str(totals.json()["total_amount"])) == Decimal("25.00")


@pytest.mark.asyncio
async def test_vendor_routes_reject_other_roles(db, make_user, client_for):
    constituent = await make_user()
    await db.commit()
    async with client_for(vendor_router, user=constituent) as client:
        assert (await client.get("/vendor/transactions")).status_code == 403


@pytest.mark.asyncio
async def test_w9_upload_route(db, make_user, client_for):
    vendor = await make_user(UserType.VENDOR)
    await db.commit()
    async with client_for(vendor_router, user=vendor) as client:
        bad = await client.post("/vendor/w9", files={"file": ("w9.txt", b"hello", "text/plain")})
        assert bad.status_code == 422
        ok = await client.post("/vendor/w9", files={"file": ("w9.pdf", b"%PDF-1.4 w9", "application/pdf")})
        assert ok.status_code == 200
        assert ok.json()["w9_status"] == "pending_review"


def test_signed_document_download():
    key = get_storage().save_bytes(b"%PDF-1.4 letter", "letters/1", "letter.pdf", "application/pdf")
    app = FastAPI()
    app.include_router(documents_router)
    client = TestClient(app)

    url = urlparse(signed_document_url(key))
    resp = client.get(f"{url.path}?{url.query}")
    assert resp.status_code == 200
    assert resp.content == b"%PDF-1.4 letter"
    assert resp.headers["content-type"] == "application/pdf"

    expires = parse_qs(url.query)["expires"][0]
    tampered = client.get(f"{url.path}?expires={expires}&signature={'0' * 64}")
    assert tampered.status_code == 403
    expired = client.get(f"{url.path}?expires=1&signature={parse_qs(url.query)['signature'][0]}")
    assert expired.status_code == 403

    get_storage().delete(key)
    assert client.get(f"{url.path}?{url.query}").status_code == 404
