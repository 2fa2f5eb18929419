"""
Policy catalog.

Declares the global and property roles, the resource kinds and actions, and
one ``PolicyEntry`` per (resource kind, action). The authorization engine does
nothing but look rows up here; adding a resource or action means adding a row.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from leaselogix.core.errors import ValidationError


class GlobalRole(str, Enum):
    ADMIN = "admin"  # Platform administrator
    USER = "user"


class PropertyRole(str, Enum):
    """Roles a membership can carry on a property (or one of its units)."""
    LANDLORD = "landlord"
    PROPERTY_MANAGER = "property_manager"
    TENANT = "tenant"  # Always unit-scoped
    VENDOR_ACCESS = "vendor_access"
    ADMIN_ACCESS = "admin_access"


class ResourceKind(str, Enum):
    PROPERTY = "property"
    UNIT = "unit"
    MEMBERSHIP = "membership"
    INVITATION = "invitation"
    REQUEST = "request"
    SCHEDULED_MAINTENANCE = "scheduled_maintenance"
    COMMENT = "comment"
    LEASE = "lease"
    RENT = "rent"
    VENDOR = "vendor"
    MEDIA = "media"
    NOTIFICATION = "notification"
    USER = "user"
    ACTION_EVENT = "action_event"


class Action(str, Enum):
    READ = "read"
    LIST = "list"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    COMMENT = "comment"
    INVITE_ISSUE = "invite:issue"
    INVITE_CANCEL = "invite:cancel"
    INVITE_RESEND = "invite:resend"
    GRANT = "grant"
    REVOKE = "revoke"
    CHANGE_PASSWORD = "change_password"


class Ownership(str, Enum):
    OWNER_ONLY = "owner_only"  # Only the owner (and admins, unless admin_forbidden)
    OWNER_OK = "owner_ok"  # The owner, in addition to role holders


@dataclass(frozen=True)
class ScopeTemplate:
    """Column names a scope predicate is compiled against."""
    property_field: Optional[str] = "property_id"
    unit_field: Optional[str] = "unit_id"


@dataclass(frozen=True)
class PolicyEntry:
    resource_kind: ResourceKind
    action: Action
    property_roles: FrozenSet[PropertyRole] = frozenset()
    global_roles: FrozenSet[GlobalRole] = frozenset({GlobalRole.ADMIN})
    # Unit-scoped grants (tenants above all) only cover resources on their own unit
    tenant_unit_scoped: bool = True
    self_field: Optional[str] = None
    ownership: Optional[Ownership] = None
    # Resource-local roles such as created_by / assigned_to
    local_fields: Tuple[str, ...] = ()
    admin_forbidden: bool = False
    write: bool = False
    scope: Optional[ScopeTemplate] = None
    description: str = ""

    @property
    def admin_only(self) -> bool:
        return not (self.property_roles or self.self_field or self.local_fields)

    @property
    def owner_fields(self) -> Tuple[str, ...]:
        fields = self.local_fields
        if self.self_field and self.ownership:
            fields = (self.self_field,) + fields
        return fields


MANAGERS = frozenset({
    PropertyRole.LANDLORD,
    PropertyRole.PROPERTY_MANAGER,
    PropertyRole.ADMIN_ACCESS,
})
OWNERS = frozenset({PropertyRole.LANDLORD, PropertyRole.ADMIN_ACCESS})
RESIDENTS = MANAGERS | {PropertyRole.TENANT}
ALL_PROPERTY_ROLES = frozenset(PropertyRole)

_PROPERTY_SCOPE = ScopeTemplate(property_field="id", unit_field=None)
_UNIT_SCOPE = ScopeTemplate(property_field="property_id", unit_field="id")


def _entry(kind: ResourceKind, action: Action, **kwargs) -> PolicyEntry:
    return PolicyEntry(resource_kind=kind, action=action, **kwargs)


POLICY_ENTRIES: Tuple[PolicyEntry, ...] = (
    # Properties and units
    _entry(ResourceKind.PROPERTY, Action.READ, property_roles=ALL_PROPERTY_ROLES,
           tenant_unit_scoped=False, description="View a property"),
    _entry(ResourceKind.PROPERTY, Action.LIST, property_roles=ALL_PROPERTY_ROLES,
           tenant_unit_scoped=False, scope=_PROPERTY_SCOPE, description="List properties"),
    _entry(ResourceKind.PROPERTY, Action.CREATE, description="Create a property"),
    _entry(ResourceKind.PROPERTY, Action.UPDATE, property_roles=MANAGERS, write=True,
           description="Update property details"),
    _entry(ResourceKind.PROPERTY, Action.DELETE, write=True, description="Deactivate a property"),
    _entry(ResourceKind.PROPERTY, Action.INVITE_ISSUE, property_roles=MANAGERS, write=True,
           description="Invite someone to a property"),

    _entry(ResourceKind.UNIT, Action.READ, property_roles=ALL_PROPERTY_ROLES, description="View a unit"),
    _entry(ResourceKind.UNIT, Action.LIST, property_roles=ALL_PROPERTY_ROLES, scope=_UNIT_SCOPE,
           description="List units"),
    _entry(ResourceKind.UNIT, Action.CREATE, property_roles=MANAGERS, write=True, description="Add a unit"),
    _entry(ResourceKind.UNIT, Action.UPDATE, property_roles=MANAGERS, write=True, description="Update a unit"),
    _entry(ResourceKind.UNIT, Action.DELETE, property_roles=OWNERS, write=True, description="Deactivate a unit"),

    # Memberships
    _entry(ResourceKind.MEMBERSHIP, Action.READ, property_roles=MANAGERS, self_field="user_id",
           ownership=Ownership.OWNER_OK, description="View a membership"),
    _entry(ResourceKind.MEMBERSHIP, Action.LIST, property_roles=MANAGERS, self_field="user_id",
           ownership=Ownership.OWNER_OK, scope=ScopeTemplate(), description="List memberships"),
    _entry(ResourceKind.MEMBERSHIP, Action.GRANT, property_roles=MANAGERS, write=True,
           description="Grant roles directly"),
    _entry(ResourceKind.MEMBERSHIP, Action.UPDATE, property_roles=MANAGERS, write=True,
           description="Change membership roles or state"),
    _entry(ResourceKind.MEMBERSHIP, Action.REVOKE, property_roles=MANAGERS, write=True,
           description="Deactivate a membership"),

    # Invitations
    _entry(ResourceKind.INVITATION, Action.READ, property_roles=MANAGERS, self_field="created_by",
           ownership=Ownership.OWNER_OK, description="View an invitation"),
    _entry(ResourceKind.INVITATION, Action.LIST, property_roles=MANAGERS, self_field="created_by",
           ownership=Ownership.OWNER_OK, scope=ScopeTemplate(), description="List invitations"),
    _entry(ResourceKind.INVITATION, Action.INVITE_CANCEL, self_field="created_by",
           ownership=Ownership.OWNER_ONLY, description="Cancel a pending invitation"),
    _entry(ResourceKind.INVITATION, Action.INVITE_RESEND, self_field="created_by",
           ownership=Ownership.OWNER_ONLY, description="Resend a pending invitation"),

    # Maintenance requests and scheduled maintenance
    _entry(ResourceKind.REQUEST, Action.READ, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), description="View a maintenance request"),
    _entry(ResourceKind.REQUEST, Action.LIST, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), scope=ScopeTemplate(),
           description="List maintenance requests"),
    _entry(ResourceKind.REQUEST, Action.CREATE, property_roles=RESIDENTS, write=True,
           description="Open a maintenance request"),
    _entry(ResourceKind.REQUEST, Action.UPDATE, property_roles=MANAGERS, self_field="created_by",
           ownership=Ownership.OWNER_OK, write=True, description="Update a maintenance request"),
    _entry(ResourceKind.REQUEST, Action.DELETE, property_roles=MANAGERS, write=True,
           description="Delete a maintenance request"),
    _entry(ResourceKind.REQUEST, Action.COMMENT, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), description="Comment on a maintenance request"),

    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.READ, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), description="View scheduled maintenance"),
    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.LIST, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), scope=ScopeTemplate(),
           description="List scheduled maintenance"),
    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.CREATE, property_roles=MANAGERS, write=True,
           description="Schedule maintenance"),
    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.UPDATE, property_roles=MANAGERS, write=True,
           description="Reschedule maintenance"),
    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.DELETE, property_roles=MANAGERS, write=True,
           description="Cancel scheduled maintenance"),
    _entry(ResourceKind.SCHEDULED_MAINTENANCE, Action.COMMENT, property_roles=RESIDENTS,
           local_fields=("created_by", "assigned_to"), description="Comment on scheduled maintenance"),

    # Comments: only the sender edits their own words
    _entry(ResourceKind.COMMENT, Action.READ, property_roles=RESIDENTS, self_field="sender",
           ownership=Ownership.OWNER_OK, description="Read a comment"),
    _entry(ResourceKind.COMMENT, Action.UPDATE, self_field="sender", ownership=Ownership.OWNER_ONLY,
           admin_forbidden=True, write=True, description="Edit a comment"),
    _entry(ResourceKind.COMMENT, Action.DELETE, self_field="sender", ownership=Ownership.OWNER_ONLY,
           write=True, description="Delete a comment"),

    # Leases and rent
    _entry(ResourceKind.LEASE, Action.READ, property_roles=MANAGERS, self_field="tenant_id",
           ownership=Ownership.OWNER_OK, description="View a lease"),
    _entry(ResourceKind.LEASE, Action.LIST, property_roles=MANAGERS, self_field="tenant_id",
           ownership=Ownership.OWNER_OK, scope=ScopeTemplate(), description="List leases"),
    _entry(ResourceKind.LEASE, Action.CREATE, property_roles=MANAGERS, write=True, description="Create a lease"),
    _entry(ResourceKind.LEASE, Action.UPDATE, property_roles=MANAGERS, write=True, description="Update a lease"),
    _entry(ResourceKind.LEASE, Action.DELETE, property_roles=OWNERS, write=True, description="Terminate a lease"),

    _entry(ResourceKind.RENT, Action.READ, property_roles=RESIDENTS, description="View rent records"),
    _entry(ResourceKind.RENT, Action.LIST, property_roles=RESIDENTS, scope=ScopeTemplate(),
           description="List rent records"),
    _entry(ResourceKind.RENT, Action.CREATE, property_roles=MANAGERS, write=True, description="Record rent"),
    _entry(ResourceKind.RENT, Action.UPDATE, property_roles=MANAGERS, write=True, description="Adjust rent"),

    # Vendors
    _entry(ResourceKind.VENDOR, Action.READ, property_roles=MANAGERS | {PropertyRole.VENDOR_ACCESS},
           tenant_unit_scoped=False, description="View a vendor"),
    _entry(ResourceKind.VENDOR, Action.LIST, property_roles=MANAGERS | {PropertyRole.VENDOR_ACCESS},
           tenant_unit_scoped=False, scope=ScopeTemplate(unit_field=None), description="List vendors"),
    _entry(ResourceKind.VENDOR, Action.CREATE, property_roles=MANAGERS, write=True, description="Add a vendor"),
    _entry(ResourceKind.VENDOR, Action.UPDATE, property_roles=MANAGERS, self_field="added_by",
           ownership=Ownership.OWNER_OK, write=True, description="Update a vendor"),
    _entry(ResourceKind.VENDOR, Action.DELETE, property_roles=OWNERS, write=True, description="Remove a vendor"),

    # Media
    _entry(ResourceKind.MEDIA, Action.READ, property_roles=RESIDENTS, self_field="uploaded_by",
           ownership=Ownership.OWNER_OK, description="View an upload"),
    _entry(ResourceKind.MEDIA, Action.CREATE, property_roles=RESIDENTS, write=True, description="Upload media"),
    _entry(ResourceKind.MEDIA, Action.DELETE, self_field="uploaded_by", ownership=Ownership.OWNER_ONLY,
           write=True, description="Delete an upload"),

    # Notifications belong to their recipient
    _entry(ResourceKind.NOTIFICATION, Action.READ, self_field="user_id", ownership=Ownership.OWNER_ONLY,
           description="Read a notification"),
    _entry(ResourceKind.NOTIFICATION, Action.LIST, self_field="user_id", ownership=Ownership.OWNER_ONLY,
           scope=ScopeTemplate(property_field=None, unit_field=None), description="List notifications"),
    _entry(ResourceKind.NOTIFICATION, Action.UPDATE, self_field="user_id", ownership=Ownership.OWNER_ONLY,
           admin_forbidden=True, description="Mark a notification read"),

    # Accounts
    _entry(ResourceKind.USER, Action.READ, self_field="id", ownership=Ownership.OWNER_OK,
           description="View a profile"),
    _entry(ResourceKind.USER, Action.UPDATE, self_field="id", ownership=Ownership.OWNER_OK, write=True,
           description="Update a profile"),
    _entry(ResourceKind.USER, Action.CHANGE_PASSWORD, self_field="id", ownership=Ownership.OWNER_ONLY,
           admin_forbidden=True, write=True, description="Change a password"),

    # Audit trail
    _entry(ResourceKind.ACTION_EVENT, Action.READ, description="View audit events"),
    _entry(ResourceKind.ACTION_EVENT, Action.LIST, scope=ScopeTemplate(property_field=None, unit_field=None),
           description="List audit events"),
)

POLICY_CATALOG: Dict[Tuple[ResourceKind, Action], PolicyEntry] = {
    (entry.resource_kind, entry.action): entry for entry in POLICY_ENTRIES
}

# Which property roles a grantor must hold to hand out each role.
# An empty set means only a global admin may grant it.
GRANTABLE_BY: Dict[PropertyRole, FrozenSet[PropertyRole]] = {
    PropertyRole.TENANT: MANAGERS,
    PropertyRole.VENDOR_ACCESS: MANAGERS,
    PropertyRole.PROPERTY_MANAGER: frozenset({PropertyRole.LANDLORD}),
    PropertyRole.LANDLORD: frozenset(),
    PropertyRole.ADMIN_ACCESS: frozenset(),
}


def get_policy(resource_kind: ResourceKind | str, action: Action | str) -> Optional[PolicyEntry]:
    """Look up the entry for (resource kind, action); None when the catalog has no row."""
    try:
        key = (ResourceKind(resource_kind), Action(action))
    except ValueError:
        return None
    return POLICY_CATALOG.get(key)


def get_permission_key(resource_kind: ResourceKind | str, action: Action | str) -> str:
    """Generate a permission key such as ``invitation:invite:cancel``."""
    r = resource_kind.value if isinstance(resource_kind, ResourceKind) else resource_kind
    a = action.value if isinstance(action, Action) else action
    return f"{r}:{a}"


def parse_roles(values: Iterable[PropertyRole | str]) -> FrozenSet[PropertyRole]:
    """Coerce role names to PropertyRole; unknown names are a validation error."""
    roles = set()
    for value in values:
        try:
            roles.add(PropertyRole(value))
        except ValueError:
            raise ValidationError(f"Unknown role: {value}", code="invalid_role") from None
    return frozenset(roles)
