"""
Invitation Service for property-role invitations.

Handles:
- Issuing invitations (authorization, grant matrix, duplicate checks) and sending them
- Verifying, accepting and declining through the public token link
- Cancelling and resending by the issuer or an admin
- Lazy expiration, listing and statistics
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.config import Settings, get_settings
from leaselogix.core.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    ForbiddenReason,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from leaselogix.core.password_policy import PasswordPolicy
from leaselogix.core.rbac import Action, PropertyRole, ResourceKind, parse_roles
from leaselogix.core.security import (
    create_access_token,
    generate_invitation_token,
    get_password_hash,
    hash_invitation_token,
)
from leaselogix.models.base import as_utc, new_id, same_id, utcnow
from leaselogix.models.invitation import Invitation, InvitationStatus
from leaselogix.models.property import Property, Unit
from leaselogix.models.user import RegistrationStatus, User
from leaselogix.schemas.invitation import (
    AcceptedMembership,
    AcceptInvitationRequest,
    AcceptInvitationResponse,
    InvitationCreate,
    InvitationListResponse,
    InvitationResponse,
    InvitationStats,
    InvitationVerifyResponse,
    ResendInvitationResponse,
)
from leaselogix.services.audit_log_service import AuditAction, AuditLogService
from leaselogix.services.authorization import AuthorizationEngine, ResourceRef
from leaselogix.services.email import EmailService
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.notifications import SMSSender
from leaselogix.services.principal import Principal
from leaselogix.services.user_notification import NotificationType, UserNotificationService

logger = logging.getLogger(__name__)


class InvitationService:
    """Service for managing property-role invitations."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        email_service: Optional[EmailService] = None,
        sms_sender: Optional[SMSSender] = None,
        notifier: Optional[UserNotificationService] = None,
        engine: Optional[AuthorizationEngine] = None,
        store: Optional[MembershipStore] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.email_service = email_service or EmailService(self.settings)
        self.sms_sender = sms_sender or SMSSender(self.settings)
        self.notifier = notifier or UserNotificationService(db)
        self.store = store or MembershipStore(db)
        self.engine = engine or AuthorizationEngine(db, self.store)
        self.audit = audit or AuditLogService(db)

    async def issue(self, data: InvitationCreate, issuer: Principal) -> InvitationResponse:
        """
        Issue an invitation and send it.

        Raises:
            ForbiddenError: issuer may not hand out these roles here
            ValidationError / NotFoundError: malformed or unknown target
            ConflictError: the invitee already holds a role, or a pending invitation exists
        """
        email = data.email.strip().lower()
        roles = parse_roles(data.roles)
        property_id = data.property_id
        unit_id = data.unit_id

        prop = await self.db.get(Property, property_id) if property_id else None
        await self._authorize_grant(issuer, property_id, unit_id, roles, prop, email)

        self._validate_shape(roles, property_id, unit_id)
        unit = await self._validate_target(property_id, unit_id, prop)

        existing_user = await self._get_user_by_email(email)
        if existing_user is not None and await self.store.exists_active(
            existing_user.id, property_id, unit_id, roles
        ):
            raise ConflictError(
                "This user already holds one of these roles on the property",
                code="membership_exists",
                details={"user_id": existing_user.id},
            )

        duplicate = await self._find_pending_duplicate(email, property_id, unit_id, roles)
        if duplicate is not None:
            raise ConflictError(
                "A pending invitation already exists for this email and target",
                code="duplicate_invitation",
                details={"invitation_id": duplicate.id},
            )

        token = generate_invitation_token()
        now = utcnow()
        invitation = Invitation(
            id=new_id(),
            email=email,
            phone=data.phone,
            roles=sorted(role.value for role in roles),
            property_id=property_id,
            unit_id=unit_id,
            target_key=Invitation.make_target_key(property_id, unit_id, roles),
            message=data.message,
            token_hash=hash_invitation_token(token),
            expires_at=now + timedelta(days=self.settings.invitation_ttl_days),
            status=InvitationStatus.PENDING.value,
            created_by=issuer.user_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(invitation)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            duplicate = await self._find_pending_duplicate(email, property_id, unit_id, roles)
            raise ConflictError(
                "A pending invitation already exists for this email and target",
                code="duplicate_invitation",
                details={"invitation_id": duplicate.id if duplicate else None},
            )

        await self.audit.record(
            AuditAction.INVITE_SENT,
            actor_id=issuer.user_id,
            actor_email=issuer.email,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation.id,
            new_value=self._snapshot(invitation),
            description=f"Invitation for {email} as {', '.join(invitation.roles)} issued by {issuer.email}",
            ip_address=issuer.ip_address,
        )
        await self.db.commit()
        logger.info("Invitation %s issued for %s by %s", invitation.id, email, issuer.email)

        inviter = await self.db.get(User, issuer.user_id)
        inviter_name = inviter.full_name if inviter else "Your property team"
        await self._dispatch(invitation, token, inviter_name, prop, unit, existing_user)

        return await self._to_response(invitation)

    async def verify(self, token: str) -> InvitationVerifyResponse:
        """Check a token from the public link and describe the invitation."""
        invitation = await self._get_by_token(token)
        await self._ensure_actionable(invitation)

        invitation.attempt_count = (invitation.attempt_count or 0) + 1
        invitation.last_attempt_at = utcnow()
        await self.db.commit()

        prop = await self.db.get(Property, invitation.property_id) if invitation.property_id else None
        unit = await self.db.get(Unit, invitation.unit_id) if invitation.unit_id else None
        inviter = await self.db.get(User, invitation.created_by)
        account_exists = await self._get_user_by_email(invitation.email) is not None

        return InvitationVerifyResponse(
            email=invitation.email,
            roles=list(invitation.roles),
            role=invitation.roles[0],
            property_id=invitation.property_id,
            property_name=prop.name if prop else None,
            unit_id=invitation.unit_id,
            unit_name=unit.name if unit else None,
            expires_at=as_utc(invitation.expires_at),
            inviter_name=inviter.full_name if inviter else None,
            account_exists=account_exists,
        )

    async def accept(
        self,
        token: str,
        payload: AcceptInvitationRequest,
        ip_address: Optional[str] = None,
    ) -> AcceptInvitationResponse:
        """
        Accept an invitation.

        User creation, one membership upsert per invited role, the status flip and the
        audit rows commit together; any failure leaves the invitation pending.
        """
        invitation = await self._get_by_token(token, for_update=True)
        await self._ensure_actionable(invitation)

        try:
            user, account_created = await self._resolve_invitee(invitation, payload, ip_address)

            changes: Dict[str, Any] = {}
            for role in sorted(invitation.role_set, key=lambda r: r.value):
                change = await self.store.upsert(
                    user.id,
                    invitation.property_id,
                    invitation.unit_id,
                    {role},
                    granted_by=invitation.created_by,
                )
                entry = changes.setdefault(
                    change.membership.id,
                    {"change": change, "created": change.created, "previous": change.previous_roles},
                )
                entry["change"] = change

            accepted_at = utcnow()
            result = await self.db.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation.id,
                    Invitation.status == InvitationStatus.PENDING.value,
                )
                .values(
                    status=InvitationStatus.ACCEPTED.value,
                    accepted_by=user.id,
                    accepted_at=accepted_at,
                    updated_at=accepted_at,
                )
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "This invitation has already been processed",
                    code="invitation_already_processed",
                )

            for membership_id, entry in changes.items():
                membership = entry["change"].membership
                if entry["created"]:
                    kind = AuditAction.MEMBERSHIP_CREATED
                    old_value = None
                else:
                    kind = AuditAction.MEMBERSHIP_UPDATED
                    old_value = {"roles": sorted(r.value for r in entry["previous"])}
                await self.audit.record(
                    kind,
                    actor_id=user.id,
                    actor_email=user.email,
                    resource_kind=ResourceKind.MEMBERSHIP.value,
                    resource_id=membership_id,
                    old_value=old_value,
                    new_value={
                        "user_id": user.id,
                        "property_id": membership.property_id,
                        "unit_id": membership.unit_id,
                        "roles": list(membership.roles),
                    },
                    description=f"Membership granted through invitation {invitation.id}",
                    ip_address=ip_address,
                    metadata={"invitation_id": invitation.id},
                )

            await self.audit.record(
                AuditAction.INVITE_ACCEPTED,
                actor_id=user.id,
                actor_email=user.email,
                resource_kind=ResourceKind.INVITATION.value,
                resource_id=invitation.id,
                old_value={"status": InvitationStatus.PENDING.value},
                new_value={"status": InvitationStatus.ACCEPTED.value, "accepted_by": user.id},
                description=f"Invitation accepted by {user.email}",
                ip_address=ip_address,
            )

            user.last_login_at = accepted_at
            user.last_login_ip = ip_address
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Invitation %s accepted by %s", invitation.id, user.email)

        await self._notify(
            invitation.created_by,
            NotificationType.INVITATION_ACCEPTED,
            "Invitation accepted",
            f"{user.full_name or user.email} accepted your invitation as {', '.join(invitation.roles)}.",
            invitation.id,
        )

        memberships = [
            AcceptedMembership(
                id=membership_id,
                property_id=entry["change"].membership.property_id,
                unit_id=entry["change"].membership.unit_id,
                roles=list(entry["change"].membership.roles),
                created=entry["created"],
            )
            for membership_id, entry in changes.items()
        ]
        return AcceptInvitationResponse(
            access_token=create_access_token(user.id),
            user_id=user.id,
            email=user.email,
            account_created=account_created,
            memberships=memberships,
        )

    async def decline(self, token: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Decline through the public link. No account or membership is touched."""
        invitation = await self._get_by_token(token, for_update=True)
        await self._ensure_actionable(invitation)

        now = utcnow()
        invitation.status = InvitationStatus.DECLINED.value
        invitation.declined_at = now
        invitation.decline_reason = reason
        invitation.updated_at = now

        await self.audit.record(
            AuditAction.INVITE_DECLINED,
            actor_email=invitation.email,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation.id,
            old_value={"status": InvitationStatus.PENDING.value},
            new_value={"status": InvitationStatus.DECLINED.value},
            description=f"Invitation declined by {invitation.email}",
            metadata={"reason": reason} if reason else None,
        )
        await self.db.commit()
        logger.info("Invitation %s declined by %s", invitation.id, invitation.email)

        await self._notify(
            invitation.created_by,
            NotificationType.INVITATION_DECLINED,
            "Invitation declined",
            f"{invitation.email} declined your invitation."
            + (f" Reason: {reason}" if reason else ""),
            invitation.id,
        )
        return {"success": True, "message": "Invitation declined"}

    async def cancel(self, invitation_id: str, canceller: Principal) -> InvitationResponse:
        """Cancel a pending invitation. Only its issuer or an admin may do so."""
        invitation = await self._get(invitation_id)
        await self._authorize(canceller, Action.INVITE_CANCEL, invitation)

        if not invitation.is_pending:
            raise ValidationError(
                f"Only pending invitations can be cancelled (status: {invitation.status})",
                code="invitation_not_pending",
            )
        await self._expire_if_due(invitation)

        now = utcnow()
        invitation.status = InvitationStatus.CANCELLED.value
        invitation.revoked_by = canceller.user_id
        invitation.revoked_at = now
        invitation.updated_at = now

        await self.audit.record(
            AuditAction.INVITE_REVOKED,
            actor_id=canceller.user_id,
            actor_email=canceller.email,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation.id,
            old_value={"status": InvitationStatus.PENDING.value},
            new_value={"status": InvitationStatus.CANCELLED.value},
            description=f"Invitation for {invitation.email} cancelled by {canceller.email}",
            ip_address=canceller.ip_address,
        )
        await self.db.commit()
        logger.info("Invitation %s cancelled by %s", invitation.id, canceller.email)

        invitee = await self._get_user_by_email(invitation.email)
        if invitee is not None:
            await self._notify(
                invitee.id,
                NotificationType.INVITATION_REVOKED,
                "Invitation withdrawn",
                "An invitation you received on LeaseLogix has been withdrawn.",
                invitation.id,
            )

        return await self._to_response(invitation)

    async def resend(self, invitation_id: str, resender: Principal) -> ResendInvitationResponse:
        """Rotate the token, extend the expiry and send the invitation again."""
        invitation = await self._get(invitation_id)
        await self._authorize(resender, Action.INVITE_RESEND, invitation)

        if not invitation.is_pending:
            raise ValidationError(
                f"Only pending invitations can be resent (status: {invitation.status})",
                code="invitation_not_pending",
            )
        await self._expire_if_due(invitation)
        self._check_resend_allowed(invitation)

        token = generate_invitation_token()
        now = utcnow()
        previous_expiry = as_utc(invitation.expires_at)
        new_expiry = max(now + timedelta(days=self.settings.invitation_ttl_days), previous_expiry)
        invitation.token_hash = hash_invitation_token(token)
        invitation.expires_at = new_expiry
        invitation.resend_count = (invitation.resend_count or 0) + 1
        invitation.last_resend_at = now
        invitation.updated_at = now

        await self.audit.record(
            AuditAction.INVITE_RESENT,
            actor_id=resender.user_id,
            actor_email=resender.email,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation.id,
            old_value={"expires_at": previous_expiry.isoformat()},
            new_value={"expires_at": new_expiry.isoformat()},
            description=f"Invitation for {invitation.email} resent by {resender.email}",
            ip_address=resender.ip_address,
            metadata={"resend_count": invitation.resend_count},
        )
        await self.db.commit()
        logger.info("Invitation %s resent by %s (%s)", invitation.id, resender.email, invitation.resend_count)

        prop = await self.db.get(Property, invitation.property_id) if invitation.property_id else None
        unit = await self.db.get(Unit, invitation.unit_id) if invitation.unit_id else None
        resender_user = await self.db.get(User, resender.user_id)
        await self.email_service.send_invitation(
            email=invitation.email,
            token=token,
            roles=list(invitation.roles),
            inviter_name=resender_user.full_name if resender_user else "Your property team",
            expires_at=new_expiry,
            property_name=prop.name if prop else None,
            unit_name=unit.name if unit else None,
            message=invitation.message,
        )

        return ResendInvitationResponse(
            success=True,
            message="Invitation email sent successfully",
            new_expires_at=new_expiry,
            resend_count=invitation.resend_count,
        )

    async def list_invitations(
        self,
        principal: Principal,
        status: Optional[str] = None,
        property_id: Optional[str] = None,
        email: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> InvitationListResponse:
        """List invitations visible to the principal."""
        await self._expire_overdue()

        scope = await self.engine.scope_for(principal, ResourceKind.INVITATION)
        conditions = [scope.to_clause(Invitation)]
        if status:
            conditions.append(Invitation.status == status)
        if property_id:
            conditions.append(Invitation.property_id == property_id)
        if email:
            conditions.append(Invitation.email == email.strip().lower())

        total_result = await self.db.execute(
            select(func.count(Invitation.id)).where(and_(*conditions))
        )
        total = total_result.scalar() or 0

        offset = (page - 1) * page_size
        result = await self.db.execute(
            select(Invitation)
            .where(and_(*conditions))
            .order_by(Invitation.created_at.desc())
            .offset(offset)
            .limit(page_size)
        )
        items = [await self._to_response(inv) for inv in result.scalars().all()]

        return InvitationListResponse(items=items, total=total, page=page, page_size=page_size)

    async def get_invitation_stats(self, principal: Principal) -> InvitationStats:
        """Per-status counts within the principal's scope."""
        await self._expire_overdue()

        scope = await self.engine.scope_for(principal, ResourceKind.INVITATION)
        result = await self.db.execute(
            select(Invitation.status, func.count(Invitation.id))
            .where(scope.to_clause(Invitation))
            .group_by(Invitation.status)
        )
        status_counts = {row[0]: row[1] for row in result.fetchall()}

        return InvitationStats(
            pending_count=status_counts.get(InvitationStatus.PENDING.value, 0),
            accepted_count=status_counts.get(InvitationStatus.ACCEPTED.value, 0),
            declined_count=status_counts.get(InvitationStatus.DECLINED.value, 0),
            expired_count=status_counts.get(InvitationStatus.EXPIRED.value, 0),
            cancelled_count=status_counts.get(InvitationStatus.CANCELLED.value, 0),
            by_status=status_counts,
        )

    async def _authorize_grant(
        self,
        issuer: Principal,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles,
        prop: Optional[Property],
        email: str,
    ) -> None:
        try:
            await self.engine.authorize_grant(
                issuer,
                property_id,
                unit_id,
                roles,
                action=Action.INVITE_ISSUE,
                property_active=prop.is_active if prop is not None else True,
            )
        except ForbiddenError as exc:
            await self.audit.emit(
                AuditAction.AUTHORIZATION_DENIED,
                actor_id=issuer.user_id,
                actor_email=issuer.email,
                resource_kind=ResourceKind.INVITATION.value,
                description=f"Invitation for {email} denied",
                ip_address=issuer.ip_address,
                status="denied",
                error_message=exc.message,
                metadata={
                    "reason": exc.reason.value,
                    "property_id": property_id,
                    "unit_id": unit_id,
                    "roles": sorted(role.value for role in roles),
                },
            )
            raise

    async def _authorize(self, principal: Principal, action: Action, invitation: Invitation) -> None:
        resource = ResourceRef(
            kind=ResourceKind.INVITATION,
            id=invitation.id,
            property_id=invitation.property_id,
            unit_id=invitation.unit_id,
            attributes={"created_by": invitation.created_by},
        )
        try:
            await self.engine.authorize(principal, action, resource)
        except ForbiddenError as exc:
            await self.audit.emit(
                AuditAction.AUTHORIZATION_DENIED,
                actor_id=principal.user_id,
                actor_email=principal.email,
                resource_kind=ResourceKind.INVITATION.value,
                resource_id=invitation.id,
                description=f"{action.value} denied",
                ip_address=principal.ip_address,
                status="denied",
                error_message=exc.message,
                metadata={"reason": exc.reason.value},
            )
            raise

    @staticmethod
    def _validate_shape(roles, property_id: Optional[str], unit_id: Optional[str]) -> None:
        if not roles:
            raise ValidationError("At least one role is required", code="roles_required")
        if property_id is None:
            if roles != {PropertyRole.ADMIN_ACCESS}:
                raise ValidationError(
                    "A property is required unless only admin_access is granted",
                    code="property_required",
                )
            if unit_id is not None:
                raise ValidationError("A unit requires a property", code="property_required")
        if PropertyRole.TENANT in roles and unit_id is None:
            raise ValidationError("The tenant role requires a unit", code="unit_required")

    async def _validate_target(
        self,
        property_id: Optional[str],
        unit_id: Optional[str],
        prop: Optional[Property],
    ) -> Optional[Unit]:
        if property_id is not None and prop is None:
            raise NotFoundError("Property not found", code="property_not_found")
        if unit_id is None:
            return None
        unit = await self.db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError("Unit not found", code="unit_not_found")
        if not same_id(unit.property_id, property_id):
            raise ValidationError("Unit does not belong to the property", code="unit_not_in_property")
        return unit

    async def _find_pending_duplicate(
        self,
        email: str,
        property_id: Optional[str],
        unit_id: Optional[str],
        roles,
    ) -> Optional[Invitation]:
        query = select(Invitation).where(
            Invitation.email == email,
            Invitation.status == InvitationStatus.PENDING.value,
        )
        query = query.where(
            Invitation.property_id.is_(None) if property_id is None else Invitation.property_id == property_id
        )
        query = query.where(
            Invitation.unit_id.is_(None) if unit_id is None else Invitation.unit_id == unit_id
        )
        result = await self.db.execute(query)
        now = utcnow()
        duplicate = None
        overdue = False
        for invitation in result.scalars().all():
            if as_utc(invitation.expires_at) <= now:
                # Frees the pending-target index slot for the new row
                await self._mark_expired(invitation, now)
                overdue = True
            elif duplicate is None and invitation.role_set & set(roles):
                duplicate = invitation
        if overdue:
            await self.db.commit()
        return duplicate

    def _check_resend_allowed(self, invitation: Invitation) -> None:
        settings = self.settings
        if (invitation.resend_count or 0) >= settings.invitation_resend_max:
            raise RateLimitedError(
                "This invitation has been resent too many times",
                code="resend_limit_reached",
                details={"resend_count": invitation.resend_count, "max_resends": settings.invitation_resend_max},
            )
        if invitation.last_resend_at is not None:
            elapsed = utcnow() - as_utc(invitation.last_resend_at)
            interval = timedelta(hours=settings.invitation_resend_interval_hours)
            if elapsed < interval:
                remaining = (interval - elapsed).total_seconds()
                hours_to_wait = max(1, math.ceil(remaining / 3600))
                raise RateLimitedError(
                    f"This invitation was resent too recently. Please wait {hours_to_wait} hours before trying again.",
                    code="resend_too_soon",
                    details={"hours_to_wait": hours_to_wait, "retry_after_seconds": int(remaining)},
                )

    async def _resolve_invitee(
        self,
        invitation: Invitation,
        payload: AcceptInvitationRequest,
        ip_address: Optional[str],
    ) -> tuple[User, bool]:
        if payload.email and payload.email.strip().lower() != invitation.email:
            raise ValidationError("Email does not match the invitation", code="email_mismatch")

        user = await self._get_user_by_email(invitation.email)
        if user is not None:
            if user.registration_status == RegistrationStatus.DEACTIVATED.value:
                raise ForbiddenError(ForbiddenReason.INACTIVE_USER, "This account has been deactivated")
            user.is_email_verified = True
            if user.registration_status in (
                RegistrationStatus.PENDING_EMAIL.value,
                RegistrationStatus.PENDING_ADMIN_APPROVAL.value,
            ):
                user.registration_status = RegistrationStatus.ACTIVE.value
            return user, False

        missing = [
            name for name in ("first_name", "last_name", "password")
            if not getattr(payload, name)
        ]
        if missing:
            raise ValidationError(
                "Name and password are required to create an account",
                code="account_details_required",
                details={"missing": missing},
            )
        is_valid, errors = PasswordPolicy.validate(payload.password, invitation.email)
        if not is_valid:
            raise ValidationError(
                "Password does not meet requirements", code="weak_password", details={"errors": errors}
            )

        user = User(
            id=new_id(),
            email=invitation.email,
            hashed_password=get_password_hash(payload.password),
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            phone=invitation.phone,
            registration_status=RegistrationStatus.ACTIVE.value,
            is_email_verified=True,
        )
        self.db.add(user)
        await self.db.flush()

        await self.audit.record(
            AuditAction.USER_CREATED,
            actor_id=user.id,
            actor_email=user.email,
            resource_kind=ResourceKind.USER.value,
            resource_id=user.id,
            description=f"Account created through invitation {invitation.id}",
            ip_address=ip_address,
        )
        logger.info("User %s created via invitation %s", user.email, invitation.id)
        return user, True

    async def _dispatch(
        self,
        invitation: Invitation,
        token: str,
        inviter_name: str,
        prop: Optional[Property],
        unit: Optional[Unit],
        existing_user: Optional[User],
    ) -> None:
        """Outbound side effects of issue; failures are logged, never raised."""
        sent = await self.email_service.send_invitation(
            email=invitation.email,
            token=token,
            roles=list(invitation.roles),
            inviter_name=inviter_name,
            expires_at=as_utc(invitation.expires_at),
            property_name=prop.name if prop else None,
            unit_name=unit.name if unit else None,
            message=invitation.message,
        )
        if not sent:
            logger.warning("Invitation %s saved but the email could not be delivered", invitation.id)

        if invitation.phone:
            place = prop.name if prop else "LeaseLogix"
            result = await self.sms_sender.send(
                invitation.phone,
                f"{inviter_name} invited you to {place}",
                self.settings.invitation_link(token),
            )
            if not result.success:
                logger.warning("Invitation %s SMS not sent: %s", invitation.id, result.detail)

        if existing_user is not None:
            await self._notify(
                existing_user.id,
                NotificationType.INVITATION_RECEIVED,
                "New invitation",
                f"{inviter_name} invited you as {', '.join(invitation.roles)}"
                + (f" at {prop.name}." if prop else "."),
                invitation.id,
            )

    async def _notify(
        self,
        user_id: Optional[str],
        type: str,
        title: str,
        message: str,
        invitation_id: str,
    ) -> None:
        if not user_id:
            return
        await self.notifier.create_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation_id,
        )

    async def _ensure_actionable(self, invitation: Invitation) -> None:
        """Fail unless the invitation is pending and unexpired."""
        if invitation.status == InvitationStatus.EXPIRED.value:
            raise ExpiredError("This invitation has expired", code="invitation_expired")
        if not invitation.is_pending:
            raise ConflictError(
                f"This invitation has already been {invitation.status}",
                code="invitation_already_processed",
                details={"status": invitation.status},
            )
        await self._expire_if_due(invitation)

    async def _expire_if_due(self, invitation: Invitation) -> None:
        if as_utc(invitation.expires_at) > utcnow():
            return
        await self._mark_expired(invitation, utcnow())
        await self.db.commit()
        logger.info("Invitation %s expired", invitation.id)
        raise ExpiredError("This invitation has expired", code="invitation_expired")

    async def _mark_expired(self, invitation: Invitation, now: datetime) -> None:
        invitation.status = InvitationStatus.EXPIRED.value
        invitation.updated_at = now
        await self.audit.record(
            AuditAction.INVITE_EXPIRED,
            actor_email=invitation.email,
            resource_kind=ResourceKind.INVITATION.value,
            resource_id=invitation.id,
            old_value={"status": InvitationStatus.PENDING.value},
            new_value={"status": InvitationStatus.EXPIRED.value},
            description="Invitation expired",
        )

    async def _expire_overdue(self) -> None:
        """Mark every overdue pending invitation expired."""
        now = utcnow()
        result = await self.db.execute(
            select(Invitation).where(
                Invitation.status == InvitationStatus.PENDING.value,
                Invitation.expires_at < now,
            )
        )
        expired = result.scalars().all()

        for inv in expired:
            await self._mark_expired(inv, now)

        if expired:
            await self.db.commit()
            logger.info("Expired %s overdue invitations", len(expired))

    async def _get(self, invitation_id: str) -> Invitation:
        invitation = await self.db.get(Invitation, invitation_id)
        if invitation is None:
            raise NotFoundError("Invitation not found", code="invitation_not_found")
        return invitation

    async def _get_by_token(self, token: str, for_update: bool = False) -> Invitation:
        query = select(Invitation).where(Invitation.token_hash == hash_invitation_token(token))
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        invitation = result.scalar_one_or_none()
        if invitation is None:
            raise NotFoundError("Invalid or unknown invitation link", code="invitation_not_found")
        return invitation

    async def _get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    @staticmethod
    def _snapshot(invitation: Invitation) -> Dict[str, Any]:
        return {
            "email": invitation.email,
            "roles": list(invitation.roles),
            "property_id": invitation.property_id,
            "unit_id": invitation.unit_id,
            "status": invitation.status,
            "expires_at": as_utc(invitation.expires_at).isoformat(),
        }

    async def _to_response(self, invitation: Invitation) -> InvitationResponse:
        """Convert invitation model to response schema."""
        prop = await self.db.get(Property, invitation.property_id) if invitation.property_id else None
        unit = await self.db.get(Unit, invitation.unit_id) if invitation.unit_id else None
        inviter = await self.db.get(User, invitation.created_by)

        return InvitationResponse(
            id=invitation.id,
            email=invitation.email,
            roles=list(invitation.roles),
            property_id=invitation.property_id,
            property_name=prop.name if prop else None,
            unit_id=invitation.unit_id,
            unit_name=unit.name if unit else None,
            status=invitation.status,
            created_by=invitation.created_by,
            inviter_email=inviter.email if inviter else None,
            inviter_name=inviter.full_name if inviter else None,
            created_at=as_utc(invitation.created_at),
            expires_at=as_utc(invitation.expires_at),
            accepted_at=as_utc(invitation.accepted_at),
            accepted_by=invitation.accepted_by,
            revoked_at=as_utc(invitation.revoked_at),
            declined_at=as_utc(invitation.declined_at),
            resend_count=invitation.resend_count or 0,
            last_resend_at=as_utc(invitation.last_resend_at),
            phone=invitation.phone,
            message=invitation.message,
        )
