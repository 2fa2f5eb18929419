"""Row builders and recording fakes shared by the test modules."""

from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaselogix.core.rbac import PropertyRole
from leaselogix.core.security import create_access_token, get_password_hash
from leaselogix.models.audit_log import ActionEvent
from leaselogix.models.base import new_id
from leaselogix.models.membership import Membership
from leaselogix.models.property import Property, Unit
from leaselogix.models.user import RegistrationStatus, User
from leaselogix.services.membership_store import MembershipStore
from leaselogix.services.notifications import NotificationResult
from leaselogix.services.principal import Principal, PrincipalResolver


async def make_user(
    db: AsyncSession,
    email: str,
    global_role: str = "user",
    status: str = RegistrationStatus.ACTIVE.value,
    password: Optional[str] = None,
) -> User:
    user = User(
        id=new_id(),
        email=email.lower(),
        hashed_password=get_password_hash(password) if password else None,
        first_name=email.split("@")[0].title(),
        last_name="Test",
        global_role=global_role,
        registration_status=status,
        is_email_verified=status == RegistrationStatus.ACTIVE.value,
    )
    db.add(user)
    await db.commit()
    return user


async def make_property(db: AsyncSession, name: str = "Maple Court", is_active: bool = True) -> Property:
    prop = Property(id=new_id(), name=name, is_active=is_active)
    db.add(prop)
    await db.commit()
    return prop


async def make_unit(db: AsyncSession, prop: Property, name: str = "1A") -> Unit:
    unit = Unit(id=new_id(), property_id=prop.id, name=name)
    db.add(unit)
    await db.commit()
    return unit


async def grant(
    db: AsyncSession,
    user: User,
    prop: Optional[Property],
    roles: Iterable[PropertyRole | str],
    unit: Optional[Unit] = None,
) -> Membership:
    change = await MembershipStore(db).upsert(
        user.id,
        prop.id if prop is not None else None,
        unit.id if unit is not None else None,
        roles,
    )
    await db.commit()
    return change.membership


async def principal_for(db: AsyncSession, user: User) -> Principal:
    return await PrincipalResolver(db).for_user(user)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


async def events_of_kind(db: AsyncSession, kind: str) -> List[ActionEvent]:
    result = await db.execute(select(ActionEvent).where(ActionEvent.kind == kind))
    return list(result.scalars().all())


class RecordingEmailService:
    """Stands in for EmailService; keeps every invitation it was asked to send."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent: List[dict] = []

    async def send_invitation(self, **kwargs) -> bool:
        self.sent.append(kwargs)
        return self.deliver

    @property
    def last_token(self) -> str:
        return self.sent[-1]["token"]

    def token_for(self, email: str) -> str:
        for message in reversed(self.sent):
            if message["email"] == email:
                return message["token"]
        raise AssertionError(f"no invitation mailed to {email}")


class RecordingSMSSender:
    def __init__(self):
        self.sent: List[tuple] = []

    async def send(self, recipient: str, subject: str, body: str) -> NotificationResult:
        self.sent.append((recipient, subject, body))
        return NotificationResult(True, "recorded")
