from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, String

from leaselogix.models.base import Base, utcnow


class RegistrationStatus(str, Enum):
    PENDING_EMAIL = "pending_email"
    PENDING_ADMIN_APPROVAL = "pending_admin_approval"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    # Always stored case-folded
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)

    # admin | user
    global_role = Column(String, nullable=False, default="user")

    registration_status = Column(
        String, nullable=False, default=RegistrationStatus.PENDING_EMAIL.value, index=True
    )
    is_email_verified = Column(Boolean, nullable=False, default=False)
    # An admin may activate an account whose email is not verified
    activated_by_admin = Column(Boolean, nullable=False, default=False)

    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.registration_status == RegistrationStatus.ACTIVE.value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
