"""
Shared fixtures: an in-memory database, model factories, a scripted
PaymentSync double and an authenticated TestClient.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models.models  # noqa: F401  registers tables
from core.capabilities import UserRole
from core.database import get_session
from core.dependencies import get_payment_sync
from core.exceptions import ExternalSyncFailed
from core.security import create_token_for_user
from core.tiers import get_tier
from main import app
from models.models import (
    Lead,
    LeadStatus,
    MaintenancePlan,
    Organization,
    OrganizationMember,
    PlanStatus,
    Project,
    User,
    utcnow,
)
from services.payment_sync import CheckoutLink, CheckoutSummary, PaymentSync


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


# =============================================================================
# Factories
# =============================================================================


class Factory:
    """Small helpers for building tenant data."""

    def __init__(self, session: Session):
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, row):
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def organization(self, name: Optional[str] = None, **kwargs) -> Organization:
        return self._save(Organization(name=name or f"Org {self._next()}", **kwargs))

    def user(self, email: Optional[str] = None, role: UserRole = UserRole.CLIENT, **kwargs) -> User:
        n = self._next()
        return self._save(User(
            full_name=kwargs.pop("full_name", f"User {n}"),
            email=email or f"user{n}@example.com",
            role=role.value,
            **kwargs,
        ))

    def member(self, user: User, organization: Organization) -> OrganizationMember:
        return self._save(OrganizationMember(user_id=user.id, organization_id=organization.id))

    def project(self, organization: Optional[Organization] = None, **kwargs) -> Project:
        return self._save(Project(
            name=kwargs.pop("name", f"Project {self._next()}"),
            organization_id=organization.id if organization else None,
            **kwargs,
        ))

    def lead(self, email: Optional[str], project: Optional[Project] = None) -> Lead:
        lead = Lead(name=f"Lead {self._next()}", email=email)
        if project is not None:
            lead.project_id = project.id
            lead.status = LeadStatus.CONVERTED.value
            lead.converted_at = utcnow()
        return self._save(lead)

    def plan(
        self,
        project: Project,
        tier: str = "ESSENTIALS",
        status: PlanStatus = PlanStatus.ACTIVE,
        **kwargs,
    ) -> MaintenancePlan:
        config = get_tier(tier)
        values = dict(
            project_id=project.id,
            tier=config.tier.value,
            status=status.value,
            monthly_price=config.monthly_price,
            support_hours_included=config.support_hours_included,
            change_requests_included=config.change_requests_included,
            current_period_start=utcnow(),
            current_period_end=utcnow() + timedelta(days=30),
        )
        if status == PlanStatus.CANCELLED:
            values["cancelled_at"] = utcnow()
        values.update(kwargs)
        return self._save(MaintenancePlan(**values))


@pytest.fixture
def factory(session):
    return Factory(session)


# =============================================================================
# Payment processor double
# =============================================================================


class FakePaymentSync(PaymentSync):
    """
    Records every Stripe call instead of making it. Set ``fail_with`` to an
    ExternalSyncFailed to make every call fail.
    """

    def __init__(self, session: Session):
        super().__init__(session, api_key="sk_test_fake")
        self.calls: List[tuple] = []
        self.fail_with: Optional[ExternalSyncFailed] = None
        self.period_end: Optional[datetime] = None
        self.checkouts: Dict[str, CheckoutSummary] = {}

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    def actions(self) -> List[str]:
        return [c[0] for c in self.calls]

    def ensure_customer(self, organization, email=None):
        self._record("ensure_customer", organization.id)
        if not organization.stripe_customer_id:
            organization.stripe_customer_id = f"cus_{organization.id}"
            self._persist(organization)
        return organization.stripe_customer_id

    def create_subscription(self, plan, organization, price_id, email=None):
        if plan.stripe_subscription_id:
            return plan.stripe_subscription_id
        customer_id = self.ensure_customer(organization, email)
        self._record("create_subscription", plan.id, price_id)
        plan.stripe_customer_id = customer_id
        plan.stripe_subscription_id = f"sub_{plan.id}"
        self._persist(plan)
        return plan.stripe_subscription_id

    def pause_subscription(self, plan):
        self._record("pause", plan.id)

    def resume_subscription(self, plan):
        self._record("resume", plan.id)

    def cancel_at_period_end(self, plan):
        self._record("cancel_at_period_end", plan.id)

    def change_subscription_price(self, plan, price_id):
        self._record("change_price", plan.id, price_id)

    def subscription_period_end(self, subscription_id):
        self._record("subscription_period_end", subscription_id)
        return self.period_end

    def retrieve_checkout_session(self, session_id):
        self._record("retrieve_checkout_session", session_id)
        return self.checkouts[session_id]

    def create_hour_pack_checkout(self, plan, pack_type, user_id, email=None):
        self._record("create_hour_pack_checkout", plan.id, pack_type, user_id)
        return CheckoutLink(session_id=f"cs_{plan.id}_{pack_type}", url="https://checkout.stripe.test/session")


@pytest.fixture
def payments(session):
    return FakePaymentSync(session)


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def client(session, payments):
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_payment_sync] = lambda: payments
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_token_for_user(user)}"}


@pytest.fixture
def headers_for():
    return auth_headers
