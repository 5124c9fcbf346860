# core/exceptions.py
from typing import Optional


class DomainError(Exception):
    """Base class for errors raised by the access and billing core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AccessDenied(DomainError):
    """
    The caller has no authorized path to the resource.

    Raised for missing and forbidden resources alike so that callers cannot
    tell which tenants or plans exist.
    """

    def __init__(self, resource: str, resource_id: Optional[int] = None, reason: str = "no_access_path"):
        super().__init__(f"Access denied to {resource} {resource_id}")
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason


class InvalidStateTransition(DomainError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Cannot move {entity} from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class PlanConflict(DomainError):
    """A project already has a live (ACTIVE or PAUSED) maintenance plan."""

    def __init__(self, project_id: int, existing_plan_id: Optional[int] = None):
        super().__init__(f"Project {project_id} already has a live maintenance plan")
        self.project_id = project_id
        self.existing_plan_id = existing_plan_id


class InsufficientHours(DomainError):
    def __init__(self, requested: float, available: float):
        super().__init__(f"Requested {requested:g} hours but only {available:g} are available")
        self.requested = requested
        self.available = available


class ExternalSyncFailed(DomainError):
    """
    A payment processor call failed.

    ``transient`` failures (network, rate limiting) are left to the
    reconciliation job; permanent ones (bad payment method, invalid request,
    missing configuration) also need a human to look at them.
    """

    def __init__(self, action: str, message: str, transient: bool = False):
        super().__init__(f"{action} failed: {message}")
        self.action = action
        self.detail = message
        self.transient = transient


class InfrastructureError(DomainError):
    """The data store could not complete the operation. Nothing was committed."""


class CheckoutRejected(DomainError):
    """A checkout session cannot be credited (unpaid, wrong kind, or someone else's)."""


class ChangeRequestLimitReached(DomainError):
    """The plan has used every change request its tier includes this period."""

    def __init__(self, included: int):
        super().__init__(f"All {included} change requests for this billing period are used")
        self.included = included
