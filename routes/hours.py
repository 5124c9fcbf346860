# routes/hours.py
from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from core.capabilities import Capability
from core.database import get_session
from core.dependencies import get_hour_ledger, get_payment_sync, require_capability
from core.exceptions import InvalidStateTransition
from core.security import IdentityClaim, get_current_identity
from models.models import PlanStatus
from schemas.hour_pack_schema import (
    ChangeRequestUsageRead,
    ConsumptionRead,
    HourPackCheckoutCreate,
    HourPackCheckoutRead,
    HourPackRead,
    HoursBalanceRead,
    HoursConsume,
    HourPackVerify,
)
from services.access_service import AccessContext, AccessGate
from services.hour_service import HourPackLedger
from services.payment_sync import PaymentSync

router = APIRouter(prefix="/client/maintenance-plans", tags=["Support Hours"])


# ==================================================================
#  ✅ Balance
# ==================================================================
@router.get("/{plan_id}/hours", response_model=HoursBalanceRead)
def get_hours_balance(
    plan_id: int,
    context: AccessContext = Depends(require_capability(Capability.VIEW_BILLING)),
    session: Session = Depends(get_session),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    return ledger.balance(plan)


# ==================================================================
#  ✅ Buy an hour pack (Stripe Checkout)
# ==================================================================
@router.post("/{plan_id}/hour-packs/checkout", response_model=HourPackCheckoutRead)
def create_hour_pack_checkout(
    plan_id: int,
    data: HourPackCheckoutCreate,
    context: AccessContext = Depends(require_capability(Capability.PURCHASE_HOURS)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    payments: PaymentSync = Depends(get_payment_sync),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    if plan.status == PlanStatus.CANCELLED.value:
        raise InvalidStateTransition("maintenance_plan", plan.status, "hour pack purchase")

    # Stripe failures propagate: nothing local has changed
    link = payments.create_hour_pack_checkout(plan, data.pack_type.value, identity.user_id, identity.email)
    return HourPackCheckoutRead(checkout_url=link.url, session_id=link.session_id)


@router.post("/{plan_id}/hour-packs/verify", response_model=HourPackRead, status_code=status.HTTP_201_CREATED)
def verify_hour_pack_purchase(
    plan_id: int,
    data: HourPackVerify,
    context: AccessContext = Depends(require_capability(Capability.PURCHASE_HOURS)),
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    return ledger.credit_from_checkout(plan, data.session_id, identity.user_id)


# ==================================================================
#  ✅ Log support work
# ==================================================================
@router.post("/{plan_id}/hours/consume", response_model=ConsumptionRead)
def consume_hours(
    plan_id: int,
    data: HoursConsume,
    packs_only: bool = False,
    context: AccessContext = Depends(require_capability(Capability.LOG_HOURS)),
    session: Session = Depends(get_session),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    if packs_only:
        return ledger.consume(
            plan, data.hours, description=data.description, performed_by_id=context.user_id
        )
    return ledger.deduct_support_hours(
        plan, data.hours, description=data.description, performed_by_id=context.user_id
    )


# ==================================================================
#  ✅ Change requests
# ==================================================================
@router.post("/{plan_id}/change-requests", response_model=ChangeRequestUsageRead)
def submit_change_request(
    plan_id: int,
    context: AccessContext = Depends(require_capability(Capability.SUBMIT_CHANGE_REQUESTS)),
    session: Session = Depends(get_session),
    ledger: HourPackLedger = Depends(get_hour_ledger),
):
    plan = AccessGate(session).authorize_plan(context, plan_id)
    return ledger.use_change_request(plan)
