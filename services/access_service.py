# ================================================================
# services/access_service.py: tenant access resolution & gating
# ================================================================
"""
Who may touch which tenant.

A principal reaches a project through one of two paths:

* direct membership in the project's organization;
* owning the lead (by email) that the project was converted from.

``AccessResolver`` computes those paths once per request into an immutable
``AccessContext``. ``AccessGate`` checks individual projects and plans
against it. Both are read-only.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from sqlalchemy import false, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.capabilities import Capability, capabilities_for
from core.exceptions import AccessDenied, InfrastructureError
from core.security import IdentityClaim
from models.models import Lead, MaintenancePlan, OrganizationMember, Project

logger = logging.getLogger(__name__)


# ============================================================
# ACCESS CONTEXT
# ============================================================
class AccessReason(str, Enum):
    ORGANIZATION_MEMBER = "organization_member"
    LEAD_EMAIL = "lead_email"


@dataclass(frozen=True)
class AccessGrant:
    """One reason the principal can reach a tenant resource."""

    reason: AccessReason
    organization_id: Optional[int] = None
    project_id: Optional[int] = None
    lead_id: Optional[int] = None


@dataclass(frozen=True)
class AccessContext:
    user_id: int
    grants: Tuple[AccessGrant, ...] = ()
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @property
    def organization_ids(self) -> FrozenSet[int]:
        return frozenset(
            g.organization_id for g in self.grants if g.reason == AccessReason.ORGANIZATION_MEMBER
        )

    @property
    def lead_project_ids(self) -> FrozenSet[int]:
        return frozenset(g.project_id for g in self.grants if g.reason == AccessReason.LEAD_EMAIL)

    @property
    def is_empty(self) -> bool:
        return not self.grants

    @property
    def sees_all_tenants(self) -> bool:
        return Capability.VIEW_ALL_TENANTS in self.capabilities

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def grants_for(self, project: Project) -> List[AccessGrant]:
        """The grants that admit ``project``, for audit logging."""
        return [
            g for g in self.grants
            if (g.reason == AccessReason.ORGANIZATION_MEMBER
                and project.organization_id is not None
                and g.organization_id == project.organization_id)
            or (g.reason == AccessReason.LEAD_EMAIL and g.project_id == project.id)
        ]


def permits(context: AccessContext, project: Project) -> bool:
    """The two-path tenant predicate, plus the staff override."""
    if context.sees_all_tenants:
        return True
    if project.organization_id is not None and project.organization_id in context.organization_ids:
        return True
    return project.id in context.lead_project_ids


# ============================================================
# RESOLVER
# ============================================================
class AccessResolver:
    def __init__(self, session: Session):
        self.session = session

    def resolve(self, identity: IdentityClaim) -> AccessContext:
        """
        Build the AccessContext for ``identity``.

        An identity without any membership or converted lead gets an empty
        context, which is not an error. Store failures surface as
        InfrastructureError.
        """
        email = (identity.email or "").strip().lower()
        try:
            memberships = self.session.exec(
                select(OrganizationMember.organization_id)
                .where(OrganizationMember.user_id == identity.user_id)
            ).all()

            leads = []
            if email:
                leads = self.session.exec(
                    select(Lead.id, Lead.project_id).where(
                        func.lower(Lead.email) == email,
                        Lead.project_id.is_not(None),
                    )
                ).all()
        except SQLAlchemyError as e:
            logger.error("❌ Access resolution failed for user %s: %s", identity.user_id, e)
            raise InfrastructureError("Could not resolve tenant access") from e

        grants = [
            AccessGrant(reason=AccessReason.ORGANIZATION_MEMBER, organization_id=org_id)
            for org_id in sorted(set(memberships))
        ]
        grants.extend(
            AccessGrant(reason=AccessReason.LEAD_EMAIL, project_id=project_id, lead_id=lead_id)
            for lead_id, project_id in sorted(leads)
        )

        context = AccessContext(
            user_id=identity.user_id,
            grants=tuple(grants),
            capabilities=capabilities_for(identity.role),
        )
        logger.debug(
            "Resolved access for user %s: orgs=%s lead_projects=%s",
            identity.user_id, sorted(context.organization_ids), sorted(context.lead_project_ids),
        )
        return context


# ============================================================
# GATE
# ============================================================
class AccessGate:
    def __init__(self, session: Session):
        self.session = session

    def authorize(self, context: AccessContext, project_id: int) -> Project:
        """Return the project, or raise AccessDenied whether it is missing or foreign."""
        project = self.session.get(Project, project_id)
        if project is None or not permits(context, project):
            logger.info("🚫 User %s denied project %s", context.user_id, project_id)
            raise AccessDenied("project", project_id)

        grants = context.grants_for(project)
        logger.debug(
            "User %s authorized for project %s via %s",
            context.user_id, project_id,
            [g.reason.value for g in grants] or ["view_all_tenants"],
        )
        return project

    def authorize_plan(self, context: AccessContext, plan_id: int) -> MaintenancePlan:
        plan = self.session.get(MaintenancePlan, plan_id)
        if plan is None:
            logger.info("🚫 User %s denied plan %s", context.user_id, plan_id)
            raise AccessDenied("maintenance_plan", plan_id)
        try:
            self.authorize(context, plan.project_id)
        except AccessDenied:
            raise AccessDenied("maintenance_plan", plan_id)
        return plan

    def require_capability(self, context: AccessContext, capability: Capability) -> None:
        if not context.has(capability):
            logger.info("🚫 User %s lacks capability %s", context.user_id, capability.value)
            raise AccessDenied("capability", reason=capability.value)

    def _project_filter(self, context: AccessContext):
        clauses = []
        if context.organization_ids:
            clauses.append(Project.organization_id.in_(context.organization_ids))
        if context.lead_project_ids:
            clauses.append(Project.id.in_(context.lead_project_ids))
        return or_(*clauses) if clauses else false()

    def accessible_projects(self, context: AccessContext) -> List[Project]:
        statement = select(Project).order_by(Project.id)
        if not context.sees_all_tenants:
            statement = statement.where(self._project_filter(context))
        return list(self.session.exec(statement).all())

    def accessible_plans(self, context: AccessContext) -> List[MaintenancePlan]:
        statement = (
            select(MaintenancePlan)
            .join(Project, Project.id == MaintenancePlan.project_id)
            .order_by(MaintenancePlan.id)
        )
        if not context.sees_all_tenants:
            statement = statement.where(self._project_filter(context))
        return list(self.session.exec(statement).all())
