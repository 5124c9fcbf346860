"""
Tests for the access gate: the OR-of-paths tenant predicate.
"""

import itertools

import pytest

from core.capabilities import Capability, capabilities_for
from core.exceptions import AccessDenied
from services.access_service import AccessContext, AccessGate, AccessGrant, AccessReason


def context_with(org_ids=(), lead_project_ids=(), role="CLIENT", user_id=1):
    grants = [AccessGrant(AccessReason.ORGANIZATION_MEMBER, organization_id=o) for o in org_ids]
    grants += [AccessGrant(AccessReason.LEAD_EMAIL, project_id=p, lead_id=p) for p in lead_project_ids]
    return AccessContext(user_id=user_id, grants=tuple(grants), capabilities=capabilities_for(role))


class TestAuthorize:
    """Single-project authorization."""

    def test_member_project_is_authorized(self, session, factory):
        org = factory.organization()
        project = factory.project(org)

        assert AccessGate(session).authorize(context_with(org_ids=[org.id]), project.id).id == project.id

    def test_lead_project_is_authorized(self, session, factory):
        project = factory.project(factory.organization())

        result = AccessGate(session).authorize(context_with(lead_project_ids=[project.id]), project.id)
        assert result.id == project.id

    def test_foreign_project_is_denied(self, session, factory):
        project = factory.project(factory.organization())
        mine = factory.organization()

        with pytest.raises(AccessDenied):
            AccessGate(session).authorize(context_with(org_ids=[mine.id]), project.id)

    def test_missing_and_foreign_look_the_same(self, session, factory):
        """A nonexistent id raises the same error type and reason."""
        project = factory.project(factory.organization())
        gate = AccessGate(session)

        with pytest.raises(AccessDenied) as foreign:
            gate.authorize(context_with(), project.id)
        with pytest.raises(AccessDenied) as missing:
            gate.authorize(context_with(), 99999)

        assert foreign.value.reason == missing.value.reason
        assert foreign.value.resource == missing.value.resource

    def test_orgless_project_needs_lead_path(self, session, factory):
        """A project not yet owned by any organization is only reachable via its lead."""
        org = factory.organization()
        project = factory.project()

        with pytest.raises(AccessDenied):
            AccessGate(session).authorize(context_with(org_ids=[org.id]), project.id)

    def test_staff_reaches_every_tenant(self, session, factory):
        project = factory.project(factory.organization())

        result = AccessGate(session).authorize(context_with(role="STAFF"), project.id)
        assert result.id == project.id


class TestAuthorizeProperty:
    """authorize succeeds iff at least one path holds."""

    def test_every_path_combination(self, session, factory):
        target_org = factory.organization()
        other_org = factory.organization()
        project = factory.project(target_org)
        other_project = factory.project(other_org)
        gate = AccessGate(session)

        for via_org, via_lead, noise in itertools.product([False, True], repeat=3):
            org_ids = [target_org.id] if via_org else []
            lead_ids = [project.id] if via_lead else []
            if noise:
                # Paths to other tenants never help
                org_ids.append(other_org.id)
                lead_ids.append(other_project.id)
            context = context_with(org_ids=org_ids, lead_project_ids=lead_ids)

            if via_org or via_lead:
                assert gate.authorize(context, project.id).id == project.id
            else:
                with pytest.raises(AccessDenied):
                    gate.authorize(context, project.id)


class TestAuthorizePlan:
    def test_plan_follows_its_project(self, session, factory):
        org = factory.organization()
        plan = factory.plan(factory.project(org))

        assert AccessGate(session).authorize_plan(context_with(org_ids=[org.id]), plan.id).id == plan.id

    def test_foreign_and_missing_plans_denied_alike(self, session, factory):
        plan = factory.plan(factory.project(factory.organization()))
        gate = AccessGate(session)

        with pytest.raises(AccessDenied) as foreign:
            gate.authorize_plan(context_with(), plan.id)
        with pytest.raises(AccessDenied) as missing:
            gate.authorize_plan(context_with(), 424242)

        assert foreign.value.resource == missing.value.resource == "maintenance_plan"


class TestListings:
    def test_accessible_projects_union_of_paths(self, session, factory):
        org = factory.organization()
        mine = factory.project(org)
        via_lead = factory.project(factory.organization())
        factory.project(factory.organization())

        context = context_with(org_ids=[org.id], lead_project_ids=[via_lead.id])
        ids = [p.id for p in AccessGate(session).accessible_projects(context)]

        assert ids == sorted([mine.id, via_lead.id])

    def test_empty_context_lists_nothing(self, session, factory):
        factory.project(factory.organization())
        gate = AccessGate(session)

        assert gate.accessible_projects(context_with()) == []
        assert gate.accessible_plans(context_with()) == []

    def test_accessible_plans(self, session, factory):
        org = factory.organization()
        plan = factory.plan(factory.project(org))
        factory.plan(factory.project(factory.organization()))

        plans = AccessGate(session).accessible_plans(context_with(org_ids=[org.id]))
        assert [p.id for p in plans] == [plan.id]


class TestRequireCapability:
    def test_missing_capability_is_denied(self, session):
        with pytest.raises(AccessDenied):
            AccessGate(session).require_capability(context_with(role="CLIENT"), Capability.LOG_HOURS)

    def test_present_capability_passes(self, session):
        AccessGate(session).require_capability(context_with(role="ADMIN"), Capability.LOG_HOURS)
