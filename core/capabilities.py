# core/capabilities.py
"""
Role → capability mapping.

Endpoints check for a capability, never for a role string. Adding a role
means adding one row here.
"""
from enum import Enum
from typing import Dict, FrozenSet


class UserRole(str, Enum):
    CEO = "CEO"
    CFO = "CFO"
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    CLIENT = "CLIENT"


class Capability(str, Enum):
    VIEW_BILLING = "view_billing"
    MANAGE_BILLING = "manage_billing"          # create, re-tier, cancel own plans
    PURCHASE_HOURS = "purchase_hours"
    LOG_HOURS = "log_hours"                    # consume support hours
    SUBMIT_CHANGE_REQUESTS = "submit_change_requests"
    ADMINISTER_PLANS = "administer_plans"      # pause/resume, corrective passes
    VIEW_ALL_TENANTS = "view_all_tenants"      # bypasses tenant scoping


_CLIENT = frozenset({
    Capability.VIEW_BILLING,
    Capability.MANAGE_BILLING,
    Capability.PURCHASE_HOURS,
    Capability.SUBMIT_CHANGE_REQUESTS,
})

_STAFF = frozenset({
    Capability.VIEW_BILLING,
    Capability.LOG_HOURS,
    Capability.VIEW_ALL_TENANTS,
})

_ADMIN = frozenset(Capability)

ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.CEO: _ADMIN,
    UserRole.CFO: _ADMIN,
    UserRole.ADMIN: _ADMIN,
    UserRole.STAFF: _STAFF,
    UserRole.CLIENT: _CLIENT,
}


def capabilities_for(role: str) -> FrozenSet[Capability]:
    """Capabilities granted to a role; unknown roles get none."""
    if isinstance(role, Enum):
        role = role.value
    try:
        return ROLE_CAPABILITIES[UserRole(str(role).strip().upper())]
    except ValueError:
        return frozenset()
