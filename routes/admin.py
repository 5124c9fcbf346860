# routes/admin.py
from fastapi import APIRouter, Depends
from sqlmodel import Session
from typing import List

from core.capabilities import Capability
from core.database import get_session
from core.dependencies import get_hour_ledger, get_plan_lifecycle, require_capability
from schemas.hour_pack_schema import ExpireResult
from schemas.maintenance_plan_schema import MaintenancePlanAdminRead, PlanTransitionRead, RepairResult
from services.access_service import AccessContext, AccessGate
from services.hour_service import HourPackLedger
from services.plan_service import PlanLifecycle
from routes.maintenance_plans import transition_response

router = APIRouter(prefix="/admin", tags=["Admin"])

administrator = require_capability(Capability.ADMINISTER_PLANS)


@router.post("/maintenance-plans/repair-tier-defaults", response_model=RepairResult)
def repair_tier_defaults(
    context: AccessContext = Depends(administrator),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    """Corrective pass for plans still carrying the generic allowance defaults."""
    return RepairResult(plans_fixed=lifecycle.repair_tier_defaults())


@router.post("/hour-packs/expire", response_model=ExpireResult)
def expire_hour_packs(
    context: AccessContext = Depends(administrator),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    return ExpireResult(packs_expired=ledger.expire_due())


@router.get("/maintenance-plans/pending-sync", response_model=List[MaintenancePlanAdminRead])
def list_pending_sync(
    context: AccessContext = Depends(administrator),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    return lifecycle.plans_pending_sync()


@router.post("/maintenance-plans/{plan_id}/retry-sync", response_model=PlanTransitionRead)
def retry_sync(
    plan_id: int,
    context: AccessContext = Depends(administrator),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    return transition_response(lifecycle.retry_sync(plan))
