"""End-to-end flows through the HTTP API."""

import asyncio

from fastapi import Depends
from sqlalchemy import Column, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from leaselogix.api import deps
from leaselogix.core.db import get_db
from leaselogix.core.rbac import ResourceKind
from leaselogix.main import app
from leaselogix.models.invitation import Invitation
from leaselogix.models.membership import Membership
from leaselogix.models.user import User
from leaselogix.services.authorization import AuthorizationEngine, ResourceRef
from leaselogix.services.invitation_service import InvitationService

from tests.factories import auth_headers, grant, make_property, make_unit, make_user, principal_for


class _RequestBase(DeclarativeBase):
    pass


class MaintenanceRequest(_RequestBase):
    """Minimal stand-in for a maintenance request table."""
    __tablename__ = "maintenance_requests"

    id = Column(String, primary_key=True)
    property_id = Column(String, nullable=False)
    unit_id = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    assigned_to = Column(String, nullable=True)


async def _world(db):
    p1 = await make_property(db, "P1")
    u1 = await make_unit(db, p1, "U1")
    u2 = await make_unit(db, p1, "U2")
    admin = await make_user(db, "admin@x.io", global_role="admin")
    return p1, u1, u2, admin


def _tenant_invite(p1, u1, email="t@x.io"):
    return {"email": email, "roles": ["tenant"], "property_id": p1.id, "unit_id": u1.id}


async def test_tenant_invite_for_new_user(client, db, session_factory, mailbox):
    p1, u1, u2, admin = await _world(db)

    issued = await client.post("/api/invites", json=_tenant_invite(p1, u1), headers=auth_headers(admin))
    assert issued.status_code == 201
    token = mailbox.token_for("t@x.io")

    verify = await client.get(f"/api/public/invites/{token}/verify")
    assert verify.status_code == 200
    view = verify.json()
    assert view["email"] == "t@x.io"
    assert view["role"] == "tenant"
    assert view["property_id"] == p1.id
    assert view["property_name"] == "P1"

    accept = await client.post(
        f"/api/public/invites/{token}/accept",
        json={"first_name": "A", "last_name": "B", "password": "pw12345678"},
    )
    assert accept.status_code == 200
    assert accept.json()["access_token"]

    async with session_factory() as session:
        user = (await session.execute(select(User).where(User.email == "t@x.io"))).scalar_one()
        assert user.is_active
        assert user.is_email_verified
        membership = (
            await session.execute(select(Membership).where(Membership.user_id == user.id))
        ).scalar_one()
        assert (membership.property_id, membership.unit_id) == (p1.id, u1.id)
        assert membership.roles == ["tenant"]
        assert membership.is_active
        invitation = await session.get(Invitation, issued.json()["id"])
        assert invitation.status == "accepted"


async def test_duplicate_pending_invite(client, db):
    p1, u1, u2, admin = await _world(db)

    first = await client.post("/api/invites", json=_tenant_invite(p1, u1), headers=auth_headers(admin))
    second = await client.post("/api/invites", json=_tenant_invite(p1, u1), headers=auth_headers(admin))

    assert first.status_code == 201
    assert second.status_code == 409


async def test_expired_token(client, db, settings, mailbox, sms):
    p1, u1, u2, admin = await _world(db)
    one_millisecond = settings.model_copy(update={"invitation_ttl_days": 0.001 / 86400})

    async def _short_lived(session: AsyncSession = Depends(get_db)) -> InvitationService:
        return InvitationService(session, settings=one_millisecond, email_service=mailbox, sms_sender=sms)

    app.dependency_overrides[deps.get_invitation_service] = _short_lived

    issued = await client.post("/api/invites", json=_tenant_invite(p1, u1), headers=auth_headers(admin))
    assert issued.status_code == 201
    token = mailbox.last_token
    await asyncio.sleep(0.01)

    verify = await client.get(f"/api/public/invites/{token}/verify")
    assert verify.status_code == 410
    assert verify.json()["error"]["kind"] == "expired"

    accept = await client.post(
        f"/api/public/invites/{token}/accept",
        json={"first_name": "A", "last_name": "B", "password": "pw12345678"},
    )
    assert accept.status_code == 410


async def test_landlord_invites_property_manager(client, db):
    p1, u1, u2, admin = await _world(db)
    landlord = await make_user(db, "landlord@x.io")
    tenant = await make_user(db, "tenant@x.io")
    await grant(db, landlord, p1, ["landlord"])
    await grant(db, tenant, p1, ["tenant"], unit=u1)
    payload = {"email": "pm@x.io", "roles": ["property_manager"], "property_id": p1.id, "unit_id": None}

    allowed = await client.post("/api/invites", json=payload, headers=auth_headers(landlord))
    assert allowed.status_code == 201

    denied = await client.post("/api/invites", json=payload, headers=auth_headers(tenant))
    assert denied.status_code == 403
    assert denied.json()["error"]["reason"] == "role_insufficient"


async def test_role_merge_on_accept(client, db, session_factory, mailbox):
    p1, u1, u2, admin = await _world(db)
    member = await make_user(db, "u@x.io")
    await grant(db, member, p1, ["property_manager"])

    issued = await client.post(
        "/api/invites",
        json={"email": "u@x.io", "roles": ["landlord"], "property_id": p1.id},
        headers=auth_headers(admin),
    )
    assert issued.status_code == 201

    accept = await client.post(f"/api/public/invites/{mailbox.token_for('u@x.io')}/accept", json={})
    assert accept.status_code == 200
    assert accept.json()["account_created"] is False

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(Membership).where(
                    Membership.user_id == member.id,
                    Membership.property_id == p1.id,
                    Membership.unit_id.is_(None),
                )
            )
        ).scalars().all()
    assert len(rows) == 1
    assert set(rows[0].roles) == {"property_manager", "landlord"}


async def test_tenant_unit_scoping(db, engine):
    async with engine.begin() as conn:
        await conn.run_sync(_RequestBase.metadata.create_all)

    p1, u1, u2, admin = await _world(db)
    tenant = await make_user(db, "t@x.io")
    await grant(db, tenant, p1, ["tenant"], unit=u1)
    db.add_all([
        MaintenanceRequest(id="on-u1", property_id=p1.id, unit_id=u1.id),
        MaintenanceRequest(id="on-u2", property_id=p1.id, unit_id=u2.id),
        MaintenanceRequest(id="mine-on-u2", property_id=p1.id, unit_id=u2.id, created_by=tenant.id),
    ])
    await db.commit()

    scope = await AuthorizationEngine(db).scope_for(await principal_for(db, tenant), ResourceKind.REQUEST)

    assert scope.unit_ids == {u1.id}
    assert not scope.matches(ResourceRef(kind=ResourceKind.REQUEST, property_id=p1.id, unit_id=u2.id))
    assert scope.matches(ResourceRef(kind=ResourceKind.REQUEST, property_id=p1.id, unit_id=u1.id))

    result = await db.execute(
        select(MaintenanceRequest.id).where(
            MaintenanceRequest.property_id == p1.id,
            scope.to_clause(MaintenanceRequest),
        )
    )
    assert set(result.scalars().all()) == {"on-u1", "mine-on-u2"}
