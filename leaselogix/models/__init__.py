"""SQLAlchemy models for the LeaseLogix access core."""

from leaselogix.models.user import User  # noqa: F401
from leaselogix.models.property import Property, Unit  # noqa: F401
from leaselogix.models.membership import Membership  # noqa: F401
from leaselogix.models.invitation import Invitation  # noqa: F401
from leaselogix.models.audit_log import ActionEvent  # noqa: F401
from leaselogix.models.user_notification import UserNotification  # noqa: F401
