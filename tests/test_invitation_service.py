from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from leaselogix.core.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    ForbiddenReason,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from leaselogix.core.security import decode_access_token, hash_invitation_token, verify_password
from leaselogix.models.base import utcnow
from leaselogix.models.invitation import Invitation
from leaselogix.models.membership import Membership
from leaselogix.models.user import RegistrationStatus, User
from leaselogix.models.user_notification import UserNotification
from leaselogix.schemas.invitation import AcceptInvitationRequest, InvitationCreate
from leaselogix.services.invitation_service import InvitationService

from tests.factories import (
    events_of_kind,
    grant,
    make_property,
    make_unit,
    make_user,
    principal_for,
)

NEW_ACCOUNT = AcceptInvitationRequest(first_name="Tia", last_name="Nguyen", password="correct-horse-9")


async def _landlord_setup(db):
    prop = await make_property(db, "Maple Court")
    unit = await make_unit(db, prop, "1A")
    landlord = await make_user(db, "owner@example.com")
    await grant(db, landlord, prop, ["landlord"])
    return prop, unit, landlord


async def _issue_tenant_invite(db, invitations, email="tia@example.com", **kwargs):
    prop, unit, landlord = await _landlord_setup(db)
    issuer = await principal_for(db, landlord)
    response = await invitations.issue(
        InvitationCreate(email=email, roles=["tenant"], property_id=prop.id, unit_id=unit.id, **kwargs),
        issuer,
    )
    return response, prop, unit, landlord


async def _notifications_for(db, user_id):
    result = await db.execute(select(UserNotification).where(UserNotification.user_id == user_id))
    return list(result.scalars().all())


async def test_issue_persists_only_token_hash(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations, email="Tia@Example.com")

    assert response.status == "pending"
    assert response.email == "tia@example.com"
    assert response.roles == ["tenant"]
    assert response.inviter_email == "owner@example.com"
    assert not hasattr(response, "token")

    token = mailbox.last_token
    invitation = await db.get(Invitation, response.id)
    assert invitation.token_hash == hash_invitation_token(token)
    assert token not in (invitation.token_hash, invitation.target_key, invitation.id)
    assert len(token) >= 43

    sent = await events_of_kind(db, "invite.sent")
    assert [e.resource_id for e in sent] == [response.id]
    assert sent[0].actor_id == landlord.id


async def test_issue_sends_sms_when_phone_given(db, invitations, sms, mailbox):
    await _issue_tenant_invite(db, invitations, phone="+15550100")

    assert len(sms.sent) == 1
    recipient, subject, body = sms.sent[0]
    assert recipient == "+15550100"
    assert "Maple Court" in subject
    assert body.endswith(mailbox.last_token)


async def test_issue_notifies_existing_account_in_app(db, invitations):
    existing = await make_user(db, "tia@example.com")
    await _issue_tenant_invite(db, invitations)

    notices = await _notifications_for(db, existing.id)
    assert [n.type for n in notices] == ["invitation_received"]


async def test_email_failure_does_not_undo_issue(db, invitations, mailbox):
    mailbox.deliver = False
    response, *_ = await _issue_tenant_invite(db, invitations)

    assert (await db.get(Invitation, response.id)).status == "pending"


async def test_duplicate_pending_invitation_conflicts(db, invitations):
    first, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    issuer = await principal_for(db, landlord)

    with pytest.raises(ConflictError) as exc:
        await invitations.issue(
            InvitationCreate(email="tia@example.com", roles=["tenant", "vendor_access"],
                             property_id=prop.id, unit_id=unit.id),
            issuer,
        )
    assert exc.value.code == "duplicate_invitation"
    assert exc.value.details["invitation_id"] == first.id

    # Disjoint roles on the same target are a separate invitation
    other = await invitations.issue(
        InvitationCreate(email="tia@example.com", roles=["vendor_access"], property_id=prop.id, unit_id=unit.id),
        issuer,
    )
    assert other.id != first.id


async def test_overdue_pending_invitation_does_not_block_reissue(db, invitations):
    first, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    stale = await db.get(Invitation, first.id)
    stale.expires_at = utcnow() - timedelta(minutes=1)
    await db.commit()

    issuer = await principal_for(db, landlord)
    second = await invitations.issue(
        InvitationCreate(email="tia@example.com", roles=["tenant"], property_id=prop.id, unit_id=unit.id),
        issuer,
    )

    assert second.id != first.id
    assert (await db.get(Invitation, first.id)).status == "expired"
    expired = await events_of_kind(db, "invite.expired")
    assert [e.resource_id for e in expired] == [first.id]


async def test_existing_member_cannot_be_invited_again(db, invitations):
    prop, unit, landlord = await _landlord_setup(db)
    tenant = await make_user(db, "tia@example.com")
    await grant(db, tenant, prop, ["tenant"], unit=unit)
    issuer = await principal_for(db, landlord)

    with pytest.raises(ConflictError) as exc:
        await invitations.issue(
            InvitationCreate(email="tia@example.com", roles=["tenant"], property_id=prop.id, unit_id=unit.id),
            issuer,
        )
    assert exc.value.code == "membership_exists"


@pytest.mark.parametrize(
    "roles, with_property, with_unit, foreign_unit, code",
    [
        (["tenant"], True, False, False, "unit_required"),
        (["tenant"], True, True, True, "unit_not_in_property"),
        (["landlord"], False, False, False, "property_required"),
    ],
)
async def test_issue_validates_target(db, invitations, roles, with_property, with_unit, foreign_unit, code):
    prop = await make_property(db, "P1")
    other = await make_property(db, "P2")
    unit = await make_unit(db, other if foreign_unit else prop)
    admin = await make_user(db, "root@example.com", global_role="admin")
    issuer = await principal_for(db, admin)

    with pytest.raises(ValidationError) as exc:
        await invitations.issue(
            InvitationCreate(
                email="new@example.com",
                roles=roles,
                property_id=prop.id if with_property else None,
                unit_id=unit.id if with_unit else None,
            ),
            issuer,
        )
    assert exc.value.code == code


async def test_issue_for_unknown_property(db, invitations):
    admin = await make_user(db, "root@example.com", global_role="admin")
    issuer = await principal_for(db, admin)

    with pytest.raises(NotFoundError) as exc:
        await invitations.issue(
            InvitationCreate(email="new@example.com", roles=["property_manager"], property_id="nope"), issuer
        )
    assert exc.value.code == "property_not_found"


async def test_admin_may_invite_property_less_admin_access(db, invitations):
    admin = await make_user(db, "root@example.com", global_role="admin")
    issuer = await principal_for(db, admin)

    response = await invitations.issue(InvitationCreate(email="ops@example.com", roles=["admin_access"]), issuer)
    assert response.property_id is None


async def test_denied_issue_is_audited(db, invitations):
    prop = await make_property(db)
    u1 = await make_unit(db, prop, "1A")
    tenant = await make_user(db, "tenant@example.com")
    await grant(db, tenant, prop, ["tenant"], unit=u1)
    issuer = await principal_for(db, tenant)

    with pytest.raises(ForbiddenError) as exc:
        await invitations.issue(
            InvitationCreate(email="friend@example.com", roles=["tenant"], property_id=prop.id, unit_id=u1.id),
            issuer,
        )
    assert exc.value.reason == ForbiddenReason.ROLE_INSUFFICIENT

    denied = await events_of_kind(db, "authorization.denied")
    assert len(denied) == 1
    assert denied[0].status == "denied"
    assert denied[0].extra_data["reason"] == "role_insufficient"
    assert (await db.execute(select(func.count(Invitation.id)))).scalar() == 0


async def test_verify_counts_attempts_and_redacts(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)

    view = await invitations.verify(mailbox.last_token)
    await invitations.verify(mailbox.last_token)

    assert view.email == "tia@example.com"
    assert view.role == "tenant"
    assert view.property_name == "Maple Court"
    assert view.unit_name == "1A"
    assert view.inviter_name == "Owner Test"
    assert view.account_exists is False
    assert (await db.get(Invitation, response.id)).attempt_count == 2


async def test_verify_unknown_token(invitations):
    with pytest.raises(NotFoundError) as exc:
        await invitations.verify("not-a-real-token")
    assert exc.value.code == "invitation_not_found"


async def test_accept_creates_account_and_membership(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    landlord_id = landlord.id

    result = await invitations.accept(mailbox.last_token, NEW_ACCOUNT, ip_address="203.0.113.9")

    assert result.account_created is True
    assert result.email == "tia@example.com"
    assert decode_access_token(result.access_token)["sub"] == result.user_id
    assert len(result.memberships) == 1
    assert result.memberships[0].roles == ["tenant"]
    assert result.memberships[0].unit_id == unit.id

    user = await db.get(User, result.user_id)
    assert user.registration_status == RegistrationStatus.ACTIVE.value
    assert user.is_email_verified is True
    assert verify_password("correct-horse-9", user.hashed_password)
    assert user.last_login_ip == "203.0.113.9"

    invitation = await db.get(Invitation, response.id)
    assert invitation.status == "accepted"
    assert invitation.accepted_by == user.id

    for kind in ("user.created", "membership.created", "invite.accepted"):
        assert len(await events_of_kind(db, kind)) == 1, kind
    notices = await _notifications_for(db, landlord_id)
    assert [n.type for n in notices] == ["invitation_accepted"]


async def test_accept_merges_roles_for_existing_account(db, invitations, mailbox):
    prop = await make_property(db)
    manager = await make_user(db, "pm@example.com", status=RegistrationStatus.PENDING_EMAIL.value)
    existing = await grant(db, manager, prop, ["property_manager"])
    admin = await make_user(db, "root@example.com", global_role="admin")
    issuer = await principal_for(db, admin)

    await invitations.issue(InvitationCreate(email="pm@example.com", roles=["landlord"], property_id=prop.id), issuer)
    result = await invitations.accept(mailbox.last_token, AcceptInvitationRequest())

    assert result.account_created is False
    assert result.memberships[0].id == existing.id
    assert result.memberships[0].created is False
    assert set(result.memberships[0].roles) == {"landlord", "property_manager"}

    user = await db.get(User, manager.id)
    assert user.registration_status == RegistrationStatus.ACTIVE.value
    rows = (await db.execute(select(Membership).where(Membership.user_id == manager.id))).scalars().all()
    assert len(rows) == 1
    assert len(await events_of_kind(db, "membership.updated")) == 1


async def test_accept_with_mismatched_email_changes_nothing(db, invitations, mailbox):
    response, *_ = await _issue_tenant_invite(db, invitations)
    invitation_id = response.id
    payload = AcceptInvitationRequest(
        email="someone-else@example.com", first_name="A", last_name="B", password="correct-horse-9"
    )

    with pytest.raises(ValidationError) as exc:
        await invitations.accept(mailbox.last_token, payload)
    assert exc.value.code == "email_mismatch"

    assert (await db.get(Invitation, invitation_id)).status == "pending"
    assert (await db.execute(select(func.count(Membership.id)))).scalar() == 1


async def test_accept_with_weak_password_rolls_back(db, invitations, mailbox):
    response, *_ = await _issue_tenant_invite(db, invitations)
    invitation_id = response.id
    payload = AcceptInvitationRequest(first_name="Tia", last_name="N", password="password123")

    with pytest.raises(ValidationError) as exc:
        await invitations.accept(mailbox.last_token, payload)
    assert exc.value.code == "weak_password"

    missing = await db.execute(select(User).where(User.email == "tia@example.com"))
    assert missing.scalar_one_or_none() is None
    assert (await db.get(Invitation, invitation_id)).status == "pending"


async def test_accept_requires_account_details_for_new_user(db, invitations, mailbox):
    await _issue_tenant_invite(db, invitations)

    with pytest.raises(ValidationError) as exc:
        await invitations.accept(mailbox.last_token, AcceptInvitationRequest(first_name="Tia"))
    assert exc.value.code == "account_details_required"
    assert exc.value.details["missing"] == ["last_name", "password"]


async def test_accept_by_deactivated_account_is_forbidden(db, invitations, mailbox):
    await make_user(db, "tia@example.com", status=RegistrationStatus.DEACTIVATED.value)
    await _issue_tenant_invite(db, invitations)

    with pytest.raises(ForbiddenError) as exc:
        await invitations.accept(mailbox.last_token, AcceptInvitationRequest())
    assert exc.value.reason == ForbiddenReason.INACTIVE_USER


async def test_token_is_single_use(db, invitations, mailbox):
    await _issue_tenant_invite(db, invitations)
    token = mailbox.last_token
    await invitations.accept(token, NEW_ACCOUNT)

    with pytest.raises(ConflictError) as exc:
        await invitations.accept(token, NEW_ACCOUNT)
    assert exc.value.code == "invitation_already_processed"


async def test_accept_loses_race_to_concurrent_accept(db, invitations, mailbox, monkeypatch):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    invitation_id, unit_id = response.id, unit.id
    real_resolve = invitations._resolve_invitee

    async def resolve_then_lose_race(invitation, payload, ip_address):
        resolved = await real_resolve(invitation, payload, ip_address)
        # Another request flips the row after our lock was taken
        await db.execute(
            update(Invitation.__table__)
            .where(Invitation.__table__.c.id == invitation_id)
            .values(status="accepted")
        )
        return resolved

    monkeypatch.setattr(invitations, "_resolve_invitee", resolve_then_lose_race)

    with pytest.raises(ConflictError) as exc:
        await invitations.accept(mailbox.last_token, NEW_ACCOUNT)
    assert exc.value.code == "invitation_already_processed"

    users = await db.execute(select(func.count(User.id)).where(User.email == "tia@example.com"))
    assert users.scalar() == 0
    memberships = await db.execute(select(func.count(Membership.id)).where(Membership.unit_id == unit_id))
    assert memberships.scalar() == 0
    assert await events_of_kind(db, "invite.accepted") == []


async def test_expired_invitation_cannot_be_used(db, invitations, mailbox):
    response, *_ = await _issue_tenant_invite(db, invitations)
    invitation = await db.get(Invitation, response.id)
    invitation.expires_at = utcnow() - timedelta(seconds=1)
    await db.commit()

    with pytest.raises(ExpiredError):
        await invitations.verify(mailbox.last_token)
    with pytest.raises(ExpiredError):
        await invitations.accept(mailbox.last_token, NEW_ACCOUNT)

    assert (await db.get(Invitation, response.id)).status == "expired"
    assert len(await events_of_kind(db, "invite.expired")) == 1


async def test_decline(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    token = mailbox.last_token

    result = await invitations.decline(token, "Found another place")
    assert result == {"success": True, "message": "Invitation declined"}

    invitation = await db.get(Invitation, response.id)
    assert invitation.status == "declined"
    assert invitation.decline_reason == "Found another place"
    assert [n.type for n in await _notifications_for(db, landlord.id)] == ["invitation_declined"]

    with pytest.raises(ConflictError):
        await invitations.accept(token, NEW_ACCOUNT)


async def test_cancel_only_by_issuer_or_admin(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    co_owner = await make_user(db, "co-owner@example.com")
    await grant(db, co_owner, prop, ["landlord"])

    with pytest.raises(ForbiddenError) as exc:
        await invitations.cancel(response.id, await principal_for(db, co_owner))
    assert exc.value.reason == ForbiddenReason.ROLE_INSUFFICIENT

    cancelled = await invitations.cancel(response.id, await principal_for(db, landlord))
    assert cancelled.status == "cancelled"
    assert cancelled.revoked_at is not None
    assert len(await events_of_kind(db, "invite.revoked")) == 1

    with pytest.raises(ValidationError) as exc:
        await invitations.cancel(response.id, await principal_for(db, landlord))
    assert exc.value.code == "invitation_not_pending"

    with pytest.raises(ConflictError):
        await invitations.verify(mailbox.last_token)


async def test_admin_can_cancel_any_invitation(db, invitations):
    response, *_ = await _issue_tenant_invite(db, invitations)
    admin = await make_user(db, "root@example.com", global_role="admin")

    cancelled = await invitations.cancel(response.id, await principal_for(db, admin))
    assert cancelled.status == "cancelled"


async def test_cancel_unknown_invitation(db, invitations):
    admin = await make_user(db, "root@example.com", global_role="admin")
    with pytest.raises(NotFoundError):
        await invitations.cancel("missing", await principal_for(db, admin))


async def test_resend_rotates_token_and_is_throttled(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    old_token = mailbox.last_token
    issuer = await principal_for(db, landlord)

    result = await invitations.resend(response.id, issuer)
    new_token = mailbox.last_token

    assert result.resend_count == 1
    assert result.new_expires_at >= response.expires_at
    assert new_token != old_token
    with pytest.raises(NotFoundError):
        await invitations.verify(old_token)
    assert (await invitations.verify(new_token)).email == "tia@example.com"

    with pytest.raises(RateLimitedError) as exc:
        await invitations.resend(response.id, issuer)
    assert exc.value.code == "resend_too_soon"
    assert exc.value.details["hours_to_wait"] == 24
    assert 0 < exc.value.details["retry_after_seconds"] <= 24 * 3600


async def _make_overdue(db, invitation_id):
    invitation = await db.get(Invitation, invitation_id)
    invitation.expires_at = utcnow() - timedelta(days=3)
    await db.commit()


async def test_cancel_of_overdue_invitation_expires_it(db, invitations):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    invitation_id = response.id
    await _make_overdue(db, invitation_id)

    with pytest.raises(ExpiredError):
        await invitations.cancel(invitation_id, await principal_for(db, landlord))

    invitation = await db.get(Invitation, invitation_id)
    assert invitation.status == "expired"
    assert invitation.revoked_at is None
    assert len(await events_of_kind(db, "invite.expired")) == 1
    assert await events_of_kind(db, "invite.revoked") == []


async def test_resend_of_overdue_invitation_does_not_revive_it(db, invitations, mailbox):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    invitation_id = response.id
    token = mailbox.last_token
    await _make_overdue(db, invitation_id)

    with pytest.raises(ExpiredError):
        await invitations.resend(invitation_id, await principal_for(db, landlord))

    invitation = await db.get(Invitation, invitation_id)
    assert invitation.status == "expired"
    assert invitation.resend_count == 0
    assert invitation.token_hash == hash_invitation_token(token)
    assert len(mailbox.sent) == 1


async def test_resend_limit(db, settings, mailbox, sms):
    service = InvitationService(
        db,
        settings=settings.model_copy(update={"invitation_resend_interval_hours": 0, "invitation_resend_max": 2}),
        email_service=mailbox,
        sms_sender=sms,
    )
    response, prop, unit, landlord = await _issue_tenant_invite(db, service)
    issuer = await principal_for(db, landlord)

    await service.resend(response.id, issuer)
    await service.resend(response.id, issuer)
    with pytest.raises(RateLimitedError) as exc:
        await service.resend(response.id, issuer)
    assert exc.value.code == "resend_limit_reached"


async def test_list_is_scoped_to_managed_properties(db, invitations):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    manager = await make_user(db, "pm@example.com")
    await grant(db, manager, prop, ["property_manager"])
    stranger_prop = await make_property(db, "Elsewhere")
    stranger = await make_user(db, "stranger@example.com")
    await grant(db, stranger, stranger_prop, ["landlord"])
    admin = await make_user(db, "root@example.com", global_role="admin")

    manager_view = await invitations.list_invitations(await principal_for(db, manager))
    assert [item.id for item in manager_view.items] == [response.id]

    stranger_view = await invitations.list_invitations(await principal_for(db, stranger))
    assert stranger_view.total == 0

    admin_view = await invitations.list_invitations(await principal_for(db, admin), status="pending")
    assert admin_view.total == 1
    assert (await invitations.list_invitations(await principal_for(db, admin), status="accepted")).total == 0


async def test_stats_expire_overdue_invitations(db, invitations):
    response, prop, unit, landlord = await _issue_tenant_invite(db, invitations)
    invitation = await db.get(Invitation, response.id)
    invitation.expires_at = utcnow() - timedelta(hours=1)
    await db.commit()

    stats = await invitations.get_invitation_stats(await principal_for(db, landlord))

    assert stats.pending_count == 0
    assert stats.expired_count == 1
    assert stats.by_status == {"expired": 1}
    assert len(await events_of_kind(db, "invite.expired")) == 1
