from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from voucher_portal.api.routes.admin import router as admin_router
from voucher_portal.api.routes.constituent import router as constituent_router
from voucher_portal.core.config import settings
from voucher_portal.models.enums import UserType
from voucher_portal.models.schemas import ApplicationCreate, DependentCreate
from voucher_portal.models.tables import Application, GuardianRelationship
from voucher_portal.services.application_service import application_service
from voucher_portal.services.guardian_service import GuardianError, guardian_service
from voucher_portal.services.user_service import UserError, create_dependent

APPLICATION = {
    "household_size": 3,
    "annual_income": "25000",
    "maryland_resident": True,
    "medical_provider_name": "Dr. Jones",
    "medical_provider_phone": "410-555-0199",
    "medical_provider_email": "jones@clinic.example.com",
}


def _dependent(**fields) -> DependentCreate:
    data = {
        "first_name": "Sam",
        "last_name": "Doe",
        "date_of_birth": dt.date(2014, 5, 1),
        "vision_disability": True,
        "relationship_type": "Parent",
    }
    data.update(fields)
    return DependentCreate(**data)


@pytest.mark.asyncio
async def test_create_dependent_shares_guardian_contact(db, make_user):
    guardian = await make_user(physical_address_1="5 Oak Ave", city="Towson", state="MD", zip_code="21204")
    dependent = await create_dependent(db, guardian, _dependent())

    assert dependent.type == UserType.CONSTITUENT
    assert dependent.email.endswith("@" + settings.DEPENDENT_EMAIL_DOMAIN)
    assert dependent.dependent_email is None
    assert (dependent.physical_address_1, dependent.zip_code) == ("5 Oak Ave", "21204")
    assert await guardian_service.guardian_for_contact(db, dependent) is guardian
    assert await guardian_service.effective_email(db, dependent) == guardian.email
    assert [(d.id, kind) for d, kind in await guardian_service.dependents_of(db, guardian)] == [(dependent.id, "Parent")]


@pytest.mark.asyncio
async def test_create_dependent_with_own_contact(db, make_user):
    guardian = await make_user()
    dependent = await create_dependent(
        db, guardian, _dependent(email="Sam@Example.com", phone="4105550123", city="Laurel", relationship_type="Legal Guardian")
    )
    assert dependent.email == dependent.dependent_email == "sam@example.com"
    assert dependent.city == "Laurel"
    assert await guardian_service.effective_email(db, dependent) == "sam@example.com"


@pytest.mark.asyncio
async def test_create_dependent_validation(db, make_user):
    guardian = await make_user()
    with pytest.raises(UserError, match="disability"):
        await create_dependent(db, guardian, _dependent(vision_disability=False))
    with pytest.raises(UserError, match="taken"):
        await create_dependent(db, guardian, _dependent(email=guardian.email))
    vendor = await make_user(UserType.VENDOR)
    with pytest.raises(UserError, match="Only constituents"):
        await create_dependent(db, vendor, _dependent())


@pytest.mark.asyncio
async def test_relationship_rules(db, make_user):
    guardian = await make_user()
    dependent = await make_user()
    await guardian_service.add_relationship(db, guardian, dependent, "Parent")
    with pytest.raises(GuardianError, match="already exists"):
        await guardian_service.add_relationship(db, guardian, dependent, "Parent")
    with pytest.raises(GuardianError, match="own guardian"):
        await guardian_service.add_relationship(db, guardian, guardian, "Parent")
    with pytest.raises(GuardianError, match="required"):
        await guardian_service.add_relationship(db, dependent, guardian, "  ")


@pytest.mark.asyncio
async def test_application_records_managing_guardian(db, make_user, make_application):
    guardian = await make_user()
    other_guardian = await make_user()
    dependent = await create_dependent(db, guardian, _dependent())
    await guardian_service.add_relationship(db, other_guardian, dependent, "Caretaker")

    application = await application_service.create(db, dependent, ApplicationCreate(**APPLICATION), actor=other_guardian)
    assert application.managing_guardian_id == other_guardian.id
    by_admin = await application_service.create(db, dependent, ApplicationCreate(**APPLICATION))
    assert by_admin.managing_guardian_id == guardian.id

    own = await make_application(guardian)
    assert {a.id for a in await guardian_service.dependent_applications(db, guardian)} == {application.id, by_admin.id}
    assert own.managing_guardian_id is None

    link = await guardian_service.relationship(db, guardian.id, dependent.id)
    await guardian_service.remove_relationship(db, link, actor=guardian)
    assert by_admin.managing_guardian_id is None
    assert application.managing_guardian_id == other_guardian.id
    assert await guardian_service.guardian_for_contact(db, dependent) is other_guardian


@pytest.mark.asyncio
async def test_dependent_routes(db, make_user, client_for):
    guardian = await make_user()
    stranger = await make_user()
    await db.commit()

    async with client_for(constituent_router, user=guardian) as client:
        created = await client.post(
            "/constituent/dependents",
            json={
                "first_name": "Kim",
                "last_name": "Doe",
                "date_of_birth": "2015-02-03",
                "hearing_disability": True,
                "relationship_type": "Parent",
            },
        )
        assert created.status_code == 201
        dependent_id = created.json()["id"]
        assert created.json()["relationship_type"] == "Parent"

        invalid = await client.post(
            "/constituent/dependents",
            json={"first_name": "No", "last_name": "Need", "date_of_birth": "2015-02-03", "relationship_type": "Parent"},
        )
        assert invalid.status_code == 422

        listing = await client.get("/constituent/dependents")
        assert [d["id"] for d in listing.json()] == [dependent_id]

        renamed = await client.patch(f"/constituent/dependents/{dependent_id}", json={"first_name": "Kimberly"})
        assert renamed.json()["first_name"] == "Kimberly"

        applied = await client.post(f"/constituent/dependents/{dependent_id}/applications", json=APPLICATION)
        assert applied.status_code == 201
        application_id = applied.json()["id"]
        assert applied.json()["user_id"] == dependent_id
        assert applied.json()["managing_guardian_id"] == guardian.id

        # The guardian manages the application through the regular routes.
        fetched = await client.get(f"/constituent/applications/{application_id}")
        assert fetched.status_code == 200
        managed = await client.get("/constituent/dependents/applications")
        assert [a["id"] for a in managed.json()] == [application_id]

        removed = await client.delete(f"/constituent/dependents/{dependent_id}")
        assert removed.status_code == 204
        assert (await client.get(f"/constituent/dependents/{dependent_id}")).status_code == 404
        assert (await client.get(f"/constituent/applications/{application_id}")).status_code == 404

    async with client_for(constituent_router, user=stranger) as client:
        assert (await client.get(f"/constituent/dependents/{dependent_id}")).status_code == 404
        denied = await client.post(f"/constituent/dependents/{dependent_id}/applications", json=APPLICATION)
        assert denied.status_code == 404

    application = await db.get(Application, application_id)
    assert application.managing_guardian_id is None


@pytest.mark.asyncio
async def test_admin_links_existing_accounts(db, make_user, client_for):
    admin = await make_user(UserType.ADMINISTRATOR)
    guardian = await make_user()
    dependent = await make_user()
    vendor = await make_user(UserType.VENDOR)
    await db.commit()

    async with client_for(admin_router, user=admin) as client:
        payload = {"guardian_id": guardian.id, "dependent_id": dependent.id, "relationship_type": "Legal Guardian"}
        created = await client.post("/admin/guardian_relationships", json=payload)
        assert created.status_code == 201
        assert (await client.post("/admin/guardian_relationships", json=payload)).status_code == 422
        wrong_role = await client.post(
            "/admin/guardian_relationships",
            json={"guardian_id": vendor.id, "dependent_id": dependent.id, "relationship_type": "Parent"},
        )
        assert wrong_role.status_code == 422

        deleted = await client.delete(f"/admin/guardian_relationships/{created.json()['id']}")
        assert deleted.status_code == 204
        assert (await client.delete(f"/admin/guardian_relationships/{created.json()['id']}")).status_code == 404

    assert (await db.execute(select(GuardianRelationship))).scalars().all() == []
