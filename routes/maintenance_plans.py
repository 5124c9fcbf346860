# routes/maintenance_plans.py
from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlmodel import Session
from typing import List

from core.capabilities import Capability
from core.database import get_session
from core.dependencies import get_plan_lifecycle, require_capability
from core.exceptions import InvalidStateTransition
from core.security import IdentityClaim, get_current_identity
from core.tiers import get_tier
from models.models import PlanStatus, Project
from schemas.maintenance_plan_schema import (
    MaintenancePlanCreate,
    MaintenancePlanRead,
    PlanTransitionRead,
    TierChange,
)
from services.access_service import AccessContext, AccessGate
from services.email_service import email_service
from services.plan_service import PlanLifecycle, SyncOutcome, TransitionResult

router = APIRouter(prefix="/client/maintenance-plans", tags=["Maintenance Plans"])


def transition_response(result: TransitionResult) -> PlanTransitionRead:
    return PlanTransitionRead(
        plan=MaintenancePlanRead.model_validate(result.plan),
        outcome=result.outcome.value,
        warning=result.warning,
    )


def notify(
    background_tasks: BackgroundTasks,
    session: Session,
    identity: IdentityClaim,
    result: TransitionResult,
) -> None:
    """Queue the plan status email for after the response is sent."""
    plan = result.plan
    project = session.get(Project, plan.project_id)
    background_tasks.add_task(
        email_service.send_plan_status_email,
        identity.email,
        project.name if project else f"project {plan.project_id}",
        get_tier(plan.tier).name,
        plan.status,
        result.outcome == SyncOutcome.COMMITTED_WITH_SYNC_WARNING,
    )


# ==================================================================
#  ✅ List & read
# ==================================================================
@router.get("/", response_model=List[MaintenancePlanRead])
def list_plans(
    context: AccessContext = Depends(require_capability(Capability.VIEW_BILLING)),
    session: Session = Depends(get_session),
):
    return AccessGate(session).accessible_plans(context)


@router.get("/{plan_id}", response_model=MaintenancePlanRead)
def get_plan(
    plan_id: int,
    context: AccessContext = Depends(require_capability(Capability.VIEW_BILLING)),
    session: Session = Depends(get_session),
):
    return AccessGate(session).authorize_plan(context, plan_id)


# ==================================================================
#  ✅ Create plan for an accessible project
# ==================================================================
@router.post("/", response_model=PlanTransitionRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    data: MaintenancePlanCreate,
    context: AccessContext = Depends(require_capability(Capability.MANAGE_BILLING)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    project = AccessGate(session).authorize(context, data.project_id)
    result = lifecycle.create_plan(project, data.tier.value, email=identity.email)
    return transition_response(result)


# ==================================================================
#  ✅ Transitions
# ==================================================================
@router.post("/{plan_id}/tier", response_model=PlanTransitionRead)
def change_tier(
    plan_id: int,
    data: TierChange,
    background_tasks: BackgroundTasks,
    context: AccessContext = Depends(require_capability(Capability.MANAGE_BILLING)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    result = lifecycle.change_tier(plan, data.tier.value)
    notify(background_tasks, session, identity, result)
    return transition_response(result)


@router.post("/{plan_id}/cancel", response_model=PlanTransitionRead)
def cancel_plan(
    plan_id: int,
    background_tasks: BackgroundTasks,
    context: AccessContext = Depends(require_capability(Capability.MANAGE_BILLING)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    result = lifecycle.cancel(plan)
    notify(background_tasks, session, identity, result)
    return transition_response(result)


@router.post("/{plan_id}/activate", response_model=PlanTransitionRead)
def activate_plan(
    plan_id: int,
    background_tasks: BackgroundTasks,
    context: AccessContext = Depends(require_capability(Capability.ADMINISTER_PLANS)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    if plan.status != PlanStatus.PENDING.value:
        raise InvalidStateTransition("maintenance_plan", plan.status, PlanStatus.ACTIVE.value)
    result = lifecycle.activate(plan)
    notify(background_tasks, session, identity, result)
    return transition_response(result)


@router.post("/{plan_id}/pause", response_model=PlanTransitionRead)
def pause_plan(
    plan_id: int,
    background_tasks: BackgroundTasks,
    context: AccessContext = Depends(require_capability(Capability.ADMINISTER_PLANS)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    result = lifecycle.pause(plan)
    notify(background_tasks, session, identity, result)
    return transition_response(result)


@router.post("/{plan_id}/resume", response_model=PlanTransitionRead)
def resume_plan(
    plan_id: int,
    background_tasks: BackgroundTasks,
    context: AccessContext = Depends(require_capability(Capability.ADMINISTER_PLANS)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    lifecycle: PlanLifecycle = Depends(get_plan_lifecycle),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    if plan.status != PlanStatus.PAUSED.value:
        raise InvalidStateTransition("maintenance_plan", plan.status, PlanStatus.ACTIVE.value)
    result = lifecycle.activate(plan)
    notify(background_tasks, session, identity, result)
    return transition_response(result)
