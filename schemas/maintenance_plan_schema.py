# maintenance_plan_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime

from core.tiers import MaintenanceTier


# ---------------------------
# Maintenance Plan
# ---------------------------
class MaintenancePlanCreate(BaseModel):
    project_id: int
    tier: MaintenanceTier
    # monthly price and allowances always come from the tier


class TierChange(BaseModel):
    tier: MaintenanceTier


class MaintenancePlanRead(BaseModel):
    id: int
    project_id: int
    tier: str
    status: str
    monthly_price: int
    support_hours_included: int
    change_requests_included: int
    support_hours_used: float
    change_requests_used: int
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    stripe_subscription_id: Optional[str]
    cancelled_at: Optional[datetime]
    paused_at: Optional[datetime]
    pending_sync_action: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MaintenancePlanAdminRead(MaintenancePlanRead):
    stripe_customer_id: Optional[str]
    last_sync_error: Optional[str]


class PlanTransitionRead(BaseModel):
    plan: MaintenancePlanRead
    outcome: str
    warning: Optional[str] = Field(default=None, description="Set when Stripe could not be updated")


class RepairResult(BaseModel):
    plans_fixed: int
