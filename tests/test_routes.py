"""
HTTP-level tests: capability checks, tenant isolation and error mapping.
"""

import pytest

from core.capabilities import UserRole
from core.exceptions import ExternalSyncFailed
from models.models import PlanStatus
from services.payment_sync import CheckoutSummary

NOT_FOUND = {"detail": "Resource not found"}


@pytest.fixture
def tenant(factory):
    """A client who belongs to one organization with one project."""
    org = factory.organization()
    user = factory.user()
    factory.member(user, org)
    project = factory.project(org)
    return user, org, project


@pytest.fixture
def admin(factory):
    return factory.user(role=UserRole.ADMIN)


@pytest.fixture
def staff(factory):
    return factory.user(role=UserRole.STAFF)


class TestAuthentication:
    def test_missing_token(self, client):
        assert client.get("/client/access").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/client/access", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_inactive_user(self, client, factory, headers_for):
        user = factory.user(is_active=False)
        assert client.get("/client/access", headers=headers_for(user)).status_code == 403


class TestAccessEndpoints:
    def test_access_context(self, client, tenant, headers_for):
        user, org, _ = tenant

        body = client.get("/client/access", headers=headers_for(user)).json()

        assert body["user_id"] == user.id
        assert body["organization_ids"] == [org.id]
        assert body["lead_project_ids"] == []
        assert "manage_billing" in body["capabilities"]
        assert "log_hours" not in body["capabilities"]

    def test_projects_cover_membership_and_lead(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        lead_project = factory.project()
        factory.lead(user.email.upper(), lead_project)
        factory.project(factory.organization())  # someone else's

        body = client.get("/client/projects", headers=headers_for(user)).json()

        assert [p["id"] for p in body] == [project.id, lead_project.id]

    def test_user_with_no_grants_sees_nothing(self, client, factory, headers_for):
        factory.project(factory.organization())
        loner = factory.user()

        assert client.get("/client/projects", headers=headers_for(loner)).json() == []


class TestPlanReads:
    def test_foreign_and_missing_plans_look_identical(self, client, factory, tenant, headers_for):
        user, _, _ = tenant
        foreign = factory.plan(factory.project(factory.organization()))

        foreign_response = client.get(f"/client/maintenance-plans/{foreign.id}", headers=headers_for(user))
        missing_response = client.get("/client/maintenance-plans/9999", headers=headers_for(user))

        assert foreign_response.status_code == missing_response.status_code == 404
        assert foreign_response.json() == missing_response.json() == NOT_FOUND

    def test_list_is_scoped(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        own = factory.plan(project)
        factory.plan(factory.project(factory.organization()))

        body = client.get("/client/maintenance-plans/", headers=headers_for(user)).json()

        assert [p["id"] for p in body] == [own.id]

    def test_staff_see_all_tenants(self, client, factory, staff, headers_for):
        plans = [factory.plan(factory.project(factory.organization())) for _ in range(2)]

        body = client.get("/client/maintenance-plans/", headers=headers_for(staff)).json()

        assert sorted(p["id"] for p in body) == sorted(p.id for p in plans)


class TestPlanTransitions:
    def test_create_plan(self, client, tenant, headers_for):
        user, _, project = tenant

        response = client.post(
            "/client/maintenance-plans/",
            json={"project_id": project.id, "tier": "DIRECTOR"},
            headers=headers_for(user),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["outcome"] == "committed"
        assert body["plan"]["status"] == PlanStatus.PENDING.value
        assert body["plan"]["support_hours_included"] == 16

    def test_create_for_foreign_project(self, client, factory, tenant, headers_for):
        user, _, _ = tenant
        foreign = factory.project(factory.organization())

        response = client.post(
            "/client/maintenance-plans/",
            json={"project_id": foreign.id, "tier": "ESSENTIALS"},
            headers=headers_for(user),
        )

        assert response.status_code == 404

    def test_second_live_plan_conflicts(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        factory.plan(project)

        response = client.post(
            "/client/maintenance-plans/",
            json={"project_id": project.id, "tier": "ESSENTIALS"},
            headers=headers_for(user),
        )

        assert response.status_code == 409
        assert response.json()["project_id"] == project.id

    def test_cancel_twice(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)

        first = client.post(f"/client/maintenance-plans/{plan.id}/cancel", headers=headers_for(user))
        second = client.post(f"/client/maintenance-plans/{plan.id}/cancel", headers=headers_for(user))

        assert first.status_code == 200
        assert first.json()["plan"]["status"] == PlanStatus.CANCELLED.value
        assert second.status_code == 409
        assert second.json()["current"] == PlanStatus.CANCELLED.value

    def test_client_cannot_pause(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)

        response = client.post(f"/client/maintenance-plans/{plan.id}/pause", headers=headers_for(user))

        assert response.status_code == 404
        assert response.json() == NOT_FOUND

    def test_admin_pause_with_stripe_down(self, client, factory, admin, payments, headers_for):
        plan = factory.plan(factory.project(factory.organization()), stripe_subscription_id="sub_1")
        payments.fail_with = ExternalSyncFailed("pause", "connection reset", transient=True)

        response = client.post(f"/client/maintenance-plans/{plan.id}/pause", headers=headers_for(admin))

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "committed_with_sync_warning"
        assert body["warning"]
        assert body["plan"]["status"] == PlanStatus.PAUSED.value
        assert body["plan"]["pending_sync_action"] == "pause"

    def test_resume_requires_paused_plan(self, client, factory, admin, headers_for):
        plan = factory.plan(factory.project())

        response = client.post(f"/client/maintenance-plans/{plan.id}/resume", headers=headers_for(admin))

        assert response.status_code == 409

    def test_change_tier(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project, tier="ESSENTIALS")

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/tier",
            json={"tier": "COO"},
            headers=headers_for(user),
        )

        assert response.status_code == 200
        assert response.json()["plan"]["support_hours_included"] == -1
        assert payments.actions() == []


class TestHoursEndpoints:
    def test_balance(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project, support_hours_used=2)

        body = client.get(f"/client/maintenance-plans/{plan.id}/hours", headers=headers_for(user)).json()

        assert body["unlimited"] is False
        assert body["monthly_remaining"] == 6
        assert body["pack_hours"] == 0

    def test_checkout_link(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hour-packs/checkout",
            json={"pack_type": "MEDIUM"},
            headers=headers_for(user),
        )

        assert response.status_code == 200
        assert response.json()["session_id"] == f"cs_{plan.id}_MEDIUM"
        assert payments.calls[-1] == ("create_hour_pack_checkout", plan.id, "MEDIUM", user.id)

    def test_checkout_for_cancelled_plan(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project, status=PlanStatus.CANCELLED)

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hour-packs/checkout",
            json={"pack_type": "SMALL"},
            headers=headers_for(user),
        )

        assert response.status_code == 409

    def test_verify_credits_pack(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)
        payments.checkouts["cs_paid"] = CheckoutSummary(
            id="cs_paid",
            payment_status="paid",
            payment_intent="pi_paid",
            metadata={"type": "hour-pack", "plan_id": str(plan.id), "pack_type": "SMALL", "user_id": str(user.id)},
        )

        url = f"/client/maintenance-plans/{plan.id}/hour-packs/verify"
        first = client.post(url, json={"session_id": "cs_paid"}, headers=headers_for(user))
        again = client.post(url, json={"session_id": "cs_paid"}, headers=headers_for(user))

        assert first.status_code == 201
        assert first.json()["hours_remaining"] == 5
        assert again.json()["id"] == first.json()["id"]

    def test_verify_someone_elses_checkout(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)
        payments.checkouts["cs_other"] = CheckoutSummary(
            id="cs_other",
            payment_status="paid",
            metadata={"type": "hour-pack", "plan_id": str(plan.id), "pack_type": "SMALL", "user_id": "999"},
        )

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hour-packs/verify",
            json={"session_id": "cs_other"},
            headers=headers_for(user),
        )

        assert response.status_code == 400

    def test_verify_with_stripe_down(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)
        payments.fail_with = ExternalSyncFailed("retrieve_checkout_session", "timeout", transient=True)

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hour-packs/verify",
            json={"session_id": "cs_any"},
            headers=headers_for(user),
        )

        assert response.status_code == 502
        assert response.json()["transient"] is True

    def test_rollover_packs_are_not_for_sale(self, client, factory, tenant, payments, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hour-packs/checkout",
            json={"pack_type": "ROLLOVER"},
            headers=headers_for(user),
        )

        assert response.status_code == 422
        assert payments.actions() == []

    def test_change_requests_until_allowance_is_used(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project, change_requests_used=2)
        url = f"/client/maintenance-plans/{plan.id}/change-requests"

        first = client.post(url, headers=headers_for(user))
        second = client.post(url, headers=headers_for(user))

        assert first.status_code == 200
        assert first.json() == {"used": 3, "included": 3, "remaining": 0}
        assert second.status_code == 409
        assert second.json()["included"] == 3

    def test_staff_cannot_submit_change_requests(self, client, factory, staff, headers_for):
        plan = factory.plan(factory.project(factory.organization()))
        response = client.post(f"/client/maintenance-plans/{plan.id}/change-requests", headers=headers_for(staff))
        assert response.status_code == 404

    def test_client_cannot_log_hours(self, client, factory, tenant, headers_for):
        user, _, project = tenant
        plan = factory.plan(project)

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hours/consume",
            json={"hours": 1},
            headers=headers_for(user),
        )

        assert response.status_code == 404

    def test_staff_log_hours(self, client, factory, staff, headers_for):
        plan = factory.plan(factory.project(factory.organization()))

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hours/consume",
            json={"hours": 3, "description": "Plugin updates"},
            headers=headers_for(staff),
        )

        assert response.status_code == 200
        assert response.json()["monthly_hours"] == 3

    def test_insufficient_hours(self, client, factory, staff, headers_for):
        plan = factory.plan(factory.project(factory.organization()))

        response = client.post(
            f"/client/maintenance-plans/{plan.id}/hours/consume?packs_only=true",
            json={"hours": 2},
            headers=headers_for(staff),
        )

        assert response.status_code == 409
        assert response.json()["requested"] == 2
        assert response.json()["available"] == 0


class TestAdminEndpoints:
    def test_requires_administer_plans(self, client, staff, headers_for):
        response = client.post("/admin/hour-packs/expire", headers=headers_for(staff))
        assert response.status_code == 404

    def test_capability_denial_is_logged(self, client, staff, headers_for, caplog):
        """Route dependencies deny through AccessGate, so every refusal leaves the same trail."""
        with caplog.at_level("INFO", logger="services.access_service"):
            response = client.get("/admin/maintenance-plans/pending-sync", headers=headers_for(staff))

        assert response.status_code == 404
        assert f"User {staff.id} lacks capability administer_plans" in caplog.text

    def test_pending_sync_and_retry(self, client, factory, admin, payments, headers_for):
        plan = factory.plan(
            factory.project(factory.organization()),
            stripe_subscription_id="sub_1",
            pending_sync_action="pause",
            status=PlanStatus.PAUSED,
            last_sync_error="pause failed: timeout",
        )

        pending = client.get("/admin/maintenance-plans/pending-sync", headers=headers_for(admin)).json()
        assert [p["id"] for p in pending] == [plan.id]
        assert pending[0]["last_sync_error"] == "pause failed: timeout"

        response = client.post(f"/admin/maintenance-plans/{plan.id}/retry-sync", headers=headers_for(admin))

        assert response.status_code == 200
        assert response.json()["outcome"] == "committed"
        assert response.json()["plan"]["pending_sync_action"] is None
        assert payments.actions() == ["pause"]

    def test_repair_tier_defaults(self, client, factory, admin, headers_for):
        factory.plan(factory.project(), tier="DIRECTOR", support_hours_included=4, change_requests_included=3)

        response = client.post("/admin/maintenance-plans/repair-tier-defaults", headers=headers_for(admin))

        assert response.json() == {"plans_fixed": 1}
