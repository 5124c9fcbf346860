# models/models.py
from typing import Optional, List
from datetime import datetime, timedelta, timezone
from enum import Enum
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from pydantic import EmailStr

from core.capabilities import UserRole
from core.tiers import (
    GENERIC_CHANGE_REQUESTS_DEFAULT,
    GENERIC_SUPPORT_HOURS_DEFAULT,
    HourPackType,
    MaintenanceTier,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class MembershipRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    CONVERTED = "CONVERTED"
    LOST = "LOST"


class PlanStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


LIVE_PLAN_STATUSES = (PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value)


class SyncAction(str, Enum):
    CREATE_SUBSCRIPTION = "create_subscription"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CHANGE_PRICE = "change_price"


class LedgerSource(str, Enum):
    MONTHLY = "monthly"
    PACK = "pack"
    UNLIMITED = "unlimited"


# ============================================================
# ORGANIZATION (tenant)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50, index=True)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    created_at: datetime = Field(default_factory=utcnow)

    memberships: List["OrganizationMember"] = Relationship(
        back_populates="organization",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    projects: List["Project"] = Relationship(back_populates="organization")


# ============================================================
# USER
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str = Field(max_length=100)
    email: EmailStr = Field(index=True, unique=True, max_length=255, nullable=False)
    role: str = Field(default=UserRole.CLIENT.value, max_length=20, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)

    memberships: List["OrganizationMember"] = Relationship(back_populates="user")


# ============================================================
# ORGANIZATION MEMBERSHIP (many-to-many)
# ============================================================
class OrganizationMember(SQLModel, table=True):
    __tablename__ = "organization_member"

    # Composite key: a user joins an organization at most once
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", primary_key=True)
    role: str = Field(default=MembershipRole.MEMBER.value, max_length=20)
    created_at: datetime = Field(default_factory=utcnow)

    user: Optional["User"] = Relationship(back_populates="memberships")
    organization: Optional["Organization"] = Relationship(back_populates="memberships")


# ============================================================
# LEAD
# ============================================================
class Lead(SQLModel, table=True):
    __tablename__ = "lead"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, index=True)
    organization_name: Optional[str] = Field(default=None, max_length=200)
    status: str = Field(default=LeadStatus.NEW.value, max_length=20)

    # Set by lead conversion only
    project_id: Optional[int] = Field(default=None, foreign_key="project.id", index=True)
    converted_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_converted(self) -> bool:
        return self.project_id is not None


# ============================================================
# PROJECT
# ============================================================
class Project(SQLModel, table=True):
    __tablename__ = "project"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)

    # Tenant scoping. Null until the client's organization exists; the project
    # is then reachable only through its originating lead.
    organization_id: Optional[int] = Field(default=None, foreign_key="organization.id", index=True)
    lead_id: Optional[int] = Field(default=None, index=True)

    organization: Optional["Organization"] = Relationship(back_populates="projects")
    plans: List["MaintenancePlan"] = Relationship(
        back_populates="project",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


# ============================================================
# MAINTENANCE PLAN
# ============================================================
class MaintenancePlan(SQLModel, table=True):
    __tablename__ = "maintenance_plan"
    __table_args__ = (
        Index(
            "uq_live_plan_per_project",
            "project_id",
            unique=True,
            sqlite_where=text("status IN ('ACTIVE', 'PAUSED')"),
            postgresql_where=text("status IN ('ACTIVE', 'PAUSED')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="project.id", nullable=False, index=True)

    tier: str = Field(default=MaintenanceTier.ESSENTIALS.value, max_length=20)
    status: str = Field(default=PlanStatus.PENDING.value, max_length=20, index=True)
    monthly_price: int = Field(default=0, description="Cents")

    # Always re-derived from the tier table; the defaults are the legacy values
    support_hours_included: int = Field(default=GENERIC_SUPPORT_HOURS_DEFAULT)
    change_requests_included: int = Field(default=GENERIC_CHANGE_REQUESTS_DEFAULT)
    support_hours_used: float = Field(default=0.0, ge=0.0)
    change_requests_used: int = Field(default=0)

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    stripe_customer_id: Optional[str] = Field(default=None, max_length=255)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)

    cancelled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None

    # Outbox for the reconciliation job
    pending_sync_action: Optional[str] = Field(default=None, max_length=40, index=True)
    last_sync_error: Optional[str] = Field(default=None, max_length=500)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    project: Optional["Project"] = Relationship(back_populates="plans")
    hour_packs: List["HourPack"] = Relationship(
        back_populates="plan",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_PLAN_STATUSES

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        """
        Whether the tenant currently receives the plan's services.
        A cancelled plan keeps its entitlement until the paid period ends.
        """
        now = now or utcnow()
        if self.status == PlanStatus.ACTIVE.value:
            return True
        if self.status == PlanStatus.CANCELLED.value:
            return self.current_period_end is not None and self.current_period_end > now
        return False


# ============================================================
# HOUR PACK
# ============================================================
class HourPack(SQLModel, table=True):
    __tablename__ = "hour_pack"
    __table_args__ = (
        CheckConstraint("hours_remaining >= 0", name="ck_hour_pack_remaining_non_negative"),
        UniqueConstraint("stripe_payment_id", name="uq_hour_pack_payment"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    plan_id: int = Field(foreign_key="maintenance_plan.id", nullable=False, index=True)

    pack_type: str = Field(default=HourPackType.CUSTOM.value, max_length=20)
    hours: float = Field(gt=0)
    hours_remaining: float = Field(ge=0)
    cost: int = Field(default=0, description="Cents")

    purchased_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    never_expires: bool = Field(default=False)
    is_active: bool = Field(default=True, index=True)
    used_at: Optional[datetime] = None

    stripe_payment_id: Optional[str] = Field(default=None, max_length=255)

    plan: Optional["MaintenancePlan"] = Relationship(back_populates="hour_packs")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.expires_at is not None and self.expires_at <= now

    def days_until_expiry(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        now = now or utcnow()
        return max(0, (self.expires_at - now + timedelta(days=1) - timedelta(microseconds=1)).days)


# ============================================================
# HOUR LEDGER (audit trail of every draw)
# ============================================================
class HourLedgerEntry(SQLModel, table=True):
    __tablename__ = "hour_ledger_entry"

    id: Optional[int] = Field(default=None, primary_key=True)
    plan_id: int = Field(foreign_key="maintenance_plan.id", nullable=False, index=True)
    pack_id: Optional[int] = Field(default=None, foreign_key="hour_pack.id", index=True)
    hours: float = Field(gt=0)
    source: str = Field(default=LedgerSource.PACK.value, max_length=20)
    description: Optional[str] = Field(default=None, max_length=500)
    performed_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# WEBHOOK EVENT LOG
# ============================================================
class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)

    payload: str = Field()
    processed: bool = Field(default=False)
    processing_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "utcnow",
    "Organization",
    "User",
    "OrganizationMember",
    "Lead",
    "Project",
    "MaintenancePlan",
    "HourPack",
    "HourLedgerEntry",
    "WebhookEvent",
    "MembershipRole",
    "LeadStatus",
    "PlanStatus",
    "SyncAction",
    "LedgerSource",
    "LIVE_PLAN_STATUSES",
]
