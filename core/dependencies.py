# core/dependencies.py
from fastapi import Depends
from sqlmodel import Session

from core.capabilities import Capability
from core.database import get_session
from core.security import IdentityClaim, get_current_identity
from services.access_service import AccessContext, AccessGate, AccessResolver
from services.hour_service import HourPackLedger
from services.payment_sync import PaymentSync
from services.plan_service import PlanLifecycle


def get_access_context(
    identity: IdentityClaim = Depends(get_current_identity),
    session: Session = Depends(get_session),
) -> AccessContext:
    """Resolved fresh on every request; never cached."""
    return AccessResolver(session).resolve(identity)


def require_capability(capability: Capability):
    """
    Dependency factory: the caller's AccessContext, provided it holds
    ``capability``. A missing capability reads exactly like a missing resource.
    """

    def dependency(
        context: AccessContext = Depends(get_access_context),
        session: Session = Depends(get_session),
    ) -> AccessContext:
        AccessGate(session).require_capability(context, capability)
        return context

    return dependency


def get_payment_sync(session: Session = Depends(get_session)) -> PaymentSync:
    return PaymentSync(session)


def get_plan_lifecycle(
    session: Session = Depends(get_session),
    payments: PaymentSync = Depends(get_payment_sync),
) -> PlanLifecycle:
    return PlanLifecycle(session, payments)


def get_hour_ledger(
    session: Session = Depends(get_session),
    payments: PaymentSync = Depends(get_payment_sync),
) -> HourPackLedger:
    return HourPackLedger(session, payments)
