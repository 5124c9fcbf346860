# ================================================================
# services/plan_service.py: maintenance plan lifecycle
# ================================================================
"""
Maintenance plan state machine::

    PENDING -> ACTIVE -> PAUSED -> ACTIVE
                 |          |
                 +----------+--> CANCELLED (terminal)

Local state is committed first. The Stripe side is synced afterwards and a
failure there never undoes the local transition: the plan keeps its
``pending_sync_action`` and ``last_sync_error`` for the reconciliation job,
and the caller gets ``COMMITTED_WITH_SYNC_WARNING``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.config import settings
from core.exceptions import ExternalSyncFailed, InfrastructureError, InvalidStateTransition, PlanConflict
from core.tiers import GENERIC_CHANGE_REQUESTS_DEFAULT, GENERIC_SUPPORT_HOURS_DEFAULT, get_tier
from models.models import (
    LIVE_PLAN_STATUSES,
    MaintenancePlan,
    Organization,
    PlanStatus,
    Project,
    SyncAction,
    utcnow,
)
from services.payment_sync import PaymentSync

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    PlanStatus.PENDING.value: {PlanStatus.ACTIVE.value},
    PlanStatus.ACTIVE.value: {PlanStatus.PAUSED.value, PlanStatus.CANCELLED.value},
    PlanStatus.PAUSED.value: {PlanStatus.ACTIVE.value, PlanStatus.CANCELLED.value},
    PlanStatus.CANCELLED.value: set(),
}

# Plan statuses in which an outstanding Stripe action may still be replayed
SYNC_ACTION_STATUSES = {
    SyncAction.CREATE_SUBSCRIPTION.value: {PlanStatus.PENDING.value, PlanStatus.ACTIVE.value},
    SyncAction.PAUSE.value: {PlanStatus.PAUSED.value},
    SyncAction.RESUME.value: {PlanStatus.ACTIVE.value},
    SyncAction.CANCEL_AT_PERIOD_END.value: {PlanStatus.CANCELLED.value},
    SyncAction.CHANGE_PRICE.value: {PlanStatus.PENDING.value, PlanStatus.ACTIVE.value, PlanStatus.PAUSED.value},
}


class SyncOutcome(str, Enum):
    COMMITTED = "committed"
    COMMITTED_WITH_SYNC_WARNING = "committed_with_sync_warning"


@dataclass
class TransitionResult:
    plan: MaintenancePlan
    outcome: SyncOutcome = SyncOutcome.COMMITTED
    warning: Optional[str] = None

    @property
    def synced(self) -> bool:
        return self.outcome == SyncOutcome.COMMITTED


class PlanLifecycle:
    def __init__(self, session: Session, payments: Optional[PaymentSync] = None):
        self.session = session
        self.payments = payments

    # ============================================================
    # Helpers
    # ============================================================
    def _save(self, plan: MaintenancePlan) -> MaintenancePlan:
        plan.updated_at = utcnow()
        try:
            self.session.add(plan)
            self.session.commit()
            self.session.refresh(plan)
        except IntegrityError as e:
            self.session.rollback()
            logger.warning("⚠️ Live plan constraint hit for project %s", plan.project_id)
            raise PlanConflict(plan.project_id) from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Could not save maintenance plan %s: %s", plan.id, e)
            raise InfrastructureError("Could not save maintenance plan") from e
        return plan

    def _check_transition(self, plan: MaintenancePlan, target: PlanStatus) -> None:
        if target.value not in ALLOWED_TRANSITIONS.get(plan.status, set()):
            raise InvalidStateTransition("maintenance_plan", plan.status, target.value)

    def _live_plan_for(self, project_id: int, exclude_id: Optional[int] = None) -> Optional[MaintenancePlan]:
        statement = select(MaintenancePlan).where(
            MaintenancePlan.project_id == project_id,
            MaintenancePlan.status.in_(LIVE_PLAN_STATUSES),
        )
        if exclude_id is not None:
            statement = statement.where(MaintenancePlan.id != exclude_id)
        return self.session.exec(statement).first()

    def _ensure_no_live_plan(self, project_id: int, exclude_id: Optional[int] = None) -> None:
        existing = self._live_plan_for(project_id, exclude_id)
        if existing:
            raise PlanConflict(project_id, existing.id)

    def _sync(self, plan: MaintenancePlan, call: Callable[[], None]) -> TransitionResult:
        """Run the Stripe side of an already-committed transition."""
        action = plan.pending_sync_action
        try:
            call()
        except ExternalSyncFailed as e:
            logger.warning(
                "⚠️ Plan %s committed but Stripe %s failed (transient=%s): %s",
                plan.id, action, e.transient, e.detail,
            )
            plan.last_sync_error = e.message[:500]
            self._save(plan)
            return TransitionResult(plan, SyncOutcome.COMMITTED_WITH_SYNC_WARNING, e.message)

        plan.pending_sync_action = None
        plan.last_sync_error = None
        self._save(plan)
        logger.info("✅ Plan %s synced with Stripe (%s)", plan.id, action)
        return TransitionResult(plan)

    def _has_subscription(self, plan: MaintenancePlan) -> bool:
        return self.payments is not None and bool(plan.stripe_subscription_id)

    def _subscription_price(self, plan: MaintenancePlan, project: Project, price_id: Optional[str] = None) -> Optional[str]:
        """The price to subscribe ``plan`` at, or None when no subscription can be opened."""
        price_id = price_id or settings.stripe_price_for_tier(plan.tier)
        if self.payments is None or not self.payments.configured or not price_id:
            return None
        if project is None or project.organization_id is None:
            return None
        return price_id

    def _drop_pending_sync(self, plan: MaintenancePlan) -> None:
        if plan.pending_sync_action:
            logger.info("🧹 Dropping stale %s for %s plan %s", plan.pending_sync_action, plan.status, plan.id)
        plan.pending_sync_action = None
        plan.last_sync_error = None

    def _call_for(self, plan: MaintenancePlan, action: str) -> Callable[[], None]:
        payments = self.payments
        if action == SyncAction.PAUSE.value:
            return lambda: payments.pause_subscription(plan)
        if action == SyncAction.RESUME.value:
            return lambda: payments.resume_subscription(plan)
        if action == SyncAction.CANCEL_AT_PERIOD_END.value:
            return lambda: payments.cancel_at_period_end(plan)
        if action == SyncAction.CHANGE_PRICE.value:
            return lambda: self._change_price(plan)
        if action == SyncAction.CREATE_SUBSCRIPTION.value:
            return lambda: self._create_subscription(plan)
        raise ValueError(f"Unknown sync action: {action}")

    def _change_price(self, plan: MaintenancePlan) -> None:
        price_id = settings.stripe_price_for_tier(plan.tier)
        if not price_id:
            raise ExternalSyncFailed("change_price", f"No Stripe price configured for tier {plan.tier}")
        self.payments.change_subscription_price(plan, price_id)

    def _create_subscription(self, plan: MaintenancePlan, price_id: Optional[str] = None, email: Optional[str] = None) -> None:
        price_id = price_id or settings.stripe_price_for_tier(plan.tier)
        if not price_id:
            raise ExternalSyncFailed("create_subscription", f"No Stripe price configured for tier {plan.tier}")
        project = self.session.get(Project, plan.project_id)
        organization = self.session.get(Organization, project.organization_id) if project and project.organization_id else None
        if organization is None:
            raise ExternalSyncFailed("create_subscription", f"Project {plan.project_id} has no billing organization")
        self.payments.create_subscription(plan, organization, price_id, email)

    # ============================================================
    # Transitions
    # ============================================================
    def create_plan(
        self,
        project: Project,
        tier: str,
        price_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> TransitionResult:
        """
        Open a PENDING plan for ``project``.

        Allowances and price always come from the tier catalog. With Stripe
        configured and a price known for the tier, the customer and
        subscription are created right away.
        """
        config = get_tier(tier)
        self._ensure_no_live_plan(project.id)

        plan = MaintenancePlan(
            project_id=project.id,
            tier=config.tier.value,
            status=PlanStatus.PENDING.value,
            monthly_price=config.monthly_price,
            support_hours_included=config.support_hours_included,
            change_requests_included=config.change_requests_included,
        )

        price_id = self._subscription_price(plan, project, price_id)
        if price_id:
            plan.pending_sync_action = SyncAction.CREATE_SUBSCRIPTION.value

        self._save(plan)
        logger.info("🆕 Plan %s (%s) created for project %s", plan.id, plan.tier, project.id)

        if not price_id:
            return TransitionResult(plan)
        return self._sync(plan, lambda: self._create_subscription(plan, price_id, email))

    def activate(self, plan: MaintenancePlan, period_end: Optional[datetime] = None) -> TransitionResult:
        self._check_transition(plan, PlanStatus.ACTIVE)
        self._ensure_no_live_plan(plan.project_id, exclude_id=plan.id)

        now = utcnow()
        resuming = plan.status == PlanStatus.PAUSED.value
        warning = None

        if period_end is None and self._has_subscription(plan):
            try:
                period_end = self.payments.subscription_period_end(plan.stripe_subscription_id)
            except ExternalSyncFailed as e:
                logger.warning("⚠️ Could not read billing period for plan %s: %s", plan.id, e.detail)
                warning = e.message
        if period_end is None and resuming and plan.current_period_end and plan.current_period_end > now:
            period_end = plan.current_period_end
        if period_end is None:
            period_end = now + timedelta(days=settings.DEFAULT_BILLING_PERIOD_DAYS)

        plan.status = PlanStatus.ACTIVE.value
        plan.paused_at = None
        plan.current_period_start = plan.current_period_start or now
        plan.current_period_end = period_end

        if resuming and self._has_subscription(plan):
            plan.pending_sync_action = SyncAction.RESUME.value
            self._save(plan)
            logger.info("▶️ Plan %s resumed", plan.id)
            return self._sync(plan, self._call_for(plan, plan.pending_sync_action))

        if resuming and not plan.stripe_subscription_id:
            # The subscription was never opened; pausing dropped the attempt
            price_id = self._subscription_price(plan, self.session.get(Project, plan.project_id))
            if price_id:
                plan.pending_sync_action = SyncAction.CREATE_SUBSCRIPTION.value
                self._save(plan)
                logger.info("▶️ Plan %s resumed, opening its subscription", plan.id)
                return self._sync(plan, lambda: self._create_subscription(plan, price_id))

        self._save(plan)
        logger.info("✅ Plan %s activated until %s", plan.id, plan.current_period_end)
        if warning:
            return TransitionResult(plan, SyncOutcome.COMMITTED_WITH_SYNC_WARNING, warning)
        return TransitionResult(plan)

    def pause(self, plan: MaintenancePlan) -> TransitionResult:
        if plan.status == PlanStatus.PAUSED.value:
            return TransitionResult(plan)
        self._check_transition(plan, PlanStatus.PAUSED)

        plan.status = PlanStatus.PAUSED.value
        plan.paused_at = utcnow()
        if self._has_subscription(plan):
            plan.pending_sync_action = SyncAction.PAUSE.value
        else:
            # A subscription must not be opened while the plan is paused
            self._drop_pending_sync(plan)
        self._save(plan)
        logger.info("⏸️ Plan %s paused", plan.id)

        if not self._has_subscription(plan):
            return TransitionResult(plan)
        return self._sync(plan, self._call_for(plan, plan.pending_sync_action))

    def cancel(self, plan: MaintenancePlan, sync: bool = True) -> TransitionResult:
        """
        Cancel the plan locally. The client stays entitled until the end of
        the paid period; Stripe is told to stop at period end.

        ``sync=False`` when Stripe itself reported the cancellation.
        """
        self._check_transition(plan, PlanStatus.CANCELLED)

        plan.status = PlanStatus.CANCELLED.value
        plan.cancelled_at = utcnow()
        plan.paused_at = None
        should_sync = sync and self._has_subscription(plan)
        if should_sync:
            plan.pending_sync_action = SyncAction.CANCEL_AT_PERIOD_END.value
        else:
            # Stripe already ended it, or there is nothing there to end
            self._drop_pending_sync(plan)
        self._save(plan)
        logger.info("🗑️ Plan %s cancelled", plan.id)

        if not should_sync:
            return TransitionResult(plan)
        return self._sync(plan, self._call_for(plan, plan.pending_sync_action))

    def change_tier(self, plan: MaintenancePlan, tier: str) -> TransitionResult:
        if plan.status == PlanStatus.CANCELLED.value:
            raise InvalidStateTransition("maintenance_plan", plan.status, f"tier {tier}")
        config = get_tier(tier)
        previous = plan.tier

        plan.tier = config.tier.value
        plan.monthly_price = config.monthly_price
        plan.support_hours_included = config.support_hours_included
        plan.change_requests_included = config.change_requests_included

        needs_price_change = previous != plan.tier and self._has_subscription(plan)
        if needs_price_change:
            plan.pending_sync_action = SyncAction.CHANGE_PRICE.value
        self._save(plan)
        logger.info("🔁 Plan %s moved from %s to %s", plan.id, previous, plan.tier)

        if not needs_price_change:
            return TransitionResult(plan)
        return self._sync(plan, self._call_for(plan, plan.pending_sync_action))

    # ============================================================
    # Corrective & reconciliation support
    # ============================================================
    def repair_tier_defaults(self) -> int:
        """
        Re-derive allowances still sitting at the generic column defaults
        when the plan's tier says otherwise. Returns the number of plans fixed.
        """
        fixed = 0
        try:
            plans = self.session.exec(select(MaintenancePlan).order_by(MaintenancePlan.id)).all()
            for plan in plans:
                try:
                    config = get_tier(plan.tier)
                except ValueError:
                    logger.warning("⚠️ Plan %s has unknown tier %s, skipped", plan.id, plan.tier)
                    continue

                changed = False
                if (plan.support_hours_included == GENERIC_SUPPORT_HOURS_DEFAULT
                        and config.support_hours_included != GENERIC_SUPPORT_HOURS_DEFAULT):
                    plan.support_hours_included = config.support_hours_included
                    changed = True
                if (plan.change_requests_included == GENERIC_CHANGE_REQUESTS_DEFAULT
                        and config.change_requests_included != GENERIC_CHANGE_REQUESTS_DEFAULT):
                    plan.change_requests_included = config.change_requests_included
                    changed = True

                if changed:
                    plan.updated_at = utcnow()
                    self.session.add(plan)
                    fixed += 1
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Tier default repair failed: %s", e)
            raise InfrastructureError("Could not repair tier defaults") from e

        logger.info("🔧 Repaired tier defaults on %s plan(s)", fixed)
        return fixed

    def plans_pending_sync(self) -> List[MaintenancePlan]:
        statement = (
            select(MaintenancePlan)
            .where(MaintenancePlan.pending_sync_action.is_not(None))
            .order_by(MaintenancePlan.updated_at, MaintenancePlan.id)
        )
        return list(self.session.exec(statement).all())

    def retry_sync(self, plan: MaintenancePlan) -> TransitionResult:
        """
        Replay the plan's outstanding Stripe action. An action the plan has
        since moved past (say, opening a subscription for a plan that is now
        cancelled) is dropped instead of replayed.
        """
        if not plan.pending_sync_action:
            return TransitionResult(plan)
        if plan.status not in SYNC_ACTION_STATUSES.get(plan.pending_sync_action, set()):
            self._drop_pending_sync(plan)
            self._save(plan)
            return TransitionResult(plan)
        if self.payments is None:
            raise ValueError("Retrying a sync needs a PaymentSync")
        return self._sync(plan, self._call_for(plan, plan.pending_sync_action))
