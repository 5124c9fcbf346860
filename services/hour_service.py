# ================================================================
# services/hour_service.py: support hours & hour pack ledger
# ================================================================
"""
Hour packs are prepaid blocks of support hours attached to a plan.

Draws go soonest-expiring first and never-expiring last. Every per-pack
decrement is a conditional UPDATE, so concurrent consumers cannot push a
pack below zero; a request is either covered in full or not at all.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.exceptions import (
    ChangeRequestLimitReached,
    CheckoutRejected,
    InfrastructureError,
    InsufficientHours,
    InvalidStateTransition,
)
from core.tiers import ExpiryPolicy, HourPackType, UNLIMITED, get_hour_pack, get_tier
from models.models import (
    HourLedgerEntry,
    HourPack,
    LedgerSource,
    MaintenancePlan,
    PlanStatus,
    utcnow,
)
from services.payment_sync import CheckoutSummary, PaymentSync

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 30


@dataclass
class PackDraw:
    pack_id: int
    hours: float


@dataclass
class ConsumptionResult:
    hours: float
    remaining: float
    draws: List[PackDraw] = field(default_factory=list)
    monthly_hours: float = 0.0


@dataclass
class ExpiringPack:
    pack_id: int
    hours_remaining: float
    expires_at: datetime
    days_left: int


@dataclass
class HoursBalance:
    unlimited: bool
    monthly_included: int
    monthly_used: float
    monthly_remaining: Optional[float]
    pack_hours: float
    total_available: Optional[float]
    expiring_soon: List[ExpiringPack] = field(default_factory=list)
    rollover_hours: float = 0.0
    change_requests_included: int = 0
    change_requests_used: int = 0
    change_requests_remaining: Optional[int] = None


@dataclass
class ChangeRequestUsage:
    used: int
    included: int
    remaining: Optional[int]


class HourPackLedger:
    def __init__(self, session: Session, payments: Optional[PaymentSync] = None):
        self.session = session
        self.payments = payments

    # ============================================================
    # Issuance
    # ============================================================
    def _by_payment(self, stripe_payment_id: str) -> Optional[HourPack]:
        return self.session.exec(
            select(HourPack).where(HourPack.stripe_payment_id == stripe_payment_id)
        ).first()

    def issue(
        self,
        plan: MaintenancePlan,
        hours: float,
        policy: ExpiryPolicy,
        pack_type: str = HourPackType.CUSTOM.value,
        cost: int = 0,
        stripe_payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> HourPack:
        """
        Add a pack to ``plan``. The expiry is fixed here and later tier
        changes never touch it. Reissuing for the same payment returns the
        existing pack.
        """
        if plan.status == PlanStatus.CANCELLED.value:
            raise InvalidStateTransition("maintenance_plan", plan.status, "hour pack issuance")
        if hours <= 0:
            raise ValueError("Hour packs must contain a positive number of hours")

        if stripe_payment_id:
            existing = self._by_payment(stripe_payment_id)
            if existing:
                logger.info("ℹ️ Payment %s already credited as pack %s", stripe_payment_id, existing.id)
                return existing

        now = now or utcnow()
        pack = HourPack(
            plan_id=plan.id,
            pack_type=pack_type,
            hours=hours,
            hours_remaining=hours,
            cost=cost,
            purchased_at=now,
            expires_at=None if policy.never_expires else now + timedelta(days=policy.days),
            never_expires=policy.never_expires,
            is_active=True,
            stripe_payment_id=stripe_payment_id,
        )
        try:
            self.session.add(pack)
            self.session.commit()
            self.session.refresh(pack)
        except IntegrityError:
            self.session.rollback()
            existing = self._by_payment(stripe_payment_id) if stripe_payment_id else None
            if existing:
                return existing
            raise InfrastructureError("Could not issue hour pack")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Could not issue hour pack for plan %s: %s", plan.id, e)
            raise InfrastructureError("Could not issue hour pack") from e

        logger.info("🎁 Issued %s hour(s) to plan %s (pack %s, expires %s)",
                    hours, plan.id, pack.id, pack.expires_at or "never")
        return pack

    def issue_from_catalog(
        self,
        plan: MaintenancePlan,
        pack_type: str,
        stripe_payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> HourPack:
        config = get_hour_pack(pack_type)
        return self.issue(
            plan,
            hours=config.hours,
            policy=config.expiry,
            pack_type=config.pack_type.value,
            cost=config.cost,
            stripe_payment_id=stripe_payment_id,
            now=now,
        )

    # ============================================================
    # Consumption
    # ============================================================
    def _usable_packs(self, plan_id: int, now: datetime) -> List[HourPack]:
        statement = (
            select(HourPack)
            .where(
                HourPack.plan_id == plan_id,
                HourPack.is_active == True,  # noqa: E712
                HourPack.hours_remaining > 0,
                or_(HourPack.expires_at.is_(None), HourPack.expires_at > now),
            )
            .order_by(
                HourPack.expires_at.is_(None),
                HourPack.expires_at,
                HourPack.purchased_at,
                HourPack.id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(statement).all())

    def _draw_packs(
        self,
        plan: MaintenancePlan,
        hours: float,
        packs: List[HourPack],
        now: datetime,
        description: Optional[str],
        performed_by_id: Optional[int],
    ) -> List[PackDraw]:
        """Decrement packs in order. Must run inside the caller's transaction."""
        draws = []
        outstanding = hours
        for pack in packs:
            if outstanding <= 0:
                break
            take = min(pack.hours_remaining, outstanding)
            if take <= 0:
                continue

            result = self.session.execute(
                update(HourPack)
                .where(
                    HourPack.id == pack.id,
                    HourPack.is_active == True,  # noqa: E712
                    HourPack.hours_remaining >= take,
                )
                .values(
                    hours_remaining=HourPack.hours_remaining - take,
                    is_active=(HourPack.hours_remaining - take) > 0,
                    used_at=case(
                        ((HourPack.hours_remaining - take) <= 0, now),
                        else_=HourPack.used_at,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another consumer got there first
                raise InsufficientHours(hours, hours - outstanding)

            self.session.add(HourLedgerEntry(
                plan_id=plan.id,
                pack_id=pack.id,
                hours=take,
                source=LedgerSource.PACK.value,
                description=description,
                performed_by_id=performed_by_id,
                created_at=now,
            ))
            draws.append(PackDraw(pack_id=pack.id, hours=take))
            outstanding -= take

        if outstanding > 0:
            raise InsufficientHours(hours, hours - outstanding)
        return draws

    def consume(
        self,
        plan: MaintenancePlan,
        hours: float,
        now: Optional[datetime] = None,
        description: Optional[str] = None,
        performed_by_id: Optional[int] = None,
    ) -> ConsumptionResult:
        """Draw ``hours`` from the plan's packs, all or nothing."""
        if hours <= 0:
            raise ValueError("Hours to consume must be positive")
        now = now or utcnow()

        try:
            packs = self._usable_packs(plan.id, now)
            available = sum(p.hours_remaining for p in packs)
            if available < hours:
                raise InsufficientHours(hours, available)

            draws = self._draw_packs(plan, hours, packs, now, description, performed_by_id)
            self.session.commit()
        except InsufficientHours:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Hour consumption failed for plan %s: %s", plan.id, e)
            raise InfrastructureError("Could not consume hours") from e

        logger.info("⏱️ Consumed %s hour(s) from plan %s across %s pack(s)", hours, plan.id, len(draws))
        return ConsumptionResult(hours=hours, remaining=available - hours, draws=draws)

    def deduct_support_hours(
        self,
        plan: MaintenancePlan,
        hours: float,
        now: Optional[datetime] = None,
        description: Optional[str] = None,
        performed_by_id: Optional[int] = None,
    ) -> ConsumptionResult:
        """
        Log support work against the plan: the monthly allowance first, then
        hour packs. Unlimited tiers only record the work.
        """
        if hours <= 0:
            raise ValueError("Hours to deduct must be positive")
        now = now or utcnow()
        if not plan.is_entitled(now):
            raise InvalidStateTransition("maintenance_plan", plan.status, "support hour deduction")

        unlimited = plan.support_hours_included == UNLIMITED
        monthly_left = 0.0 if unlimited else max(0.0, plan.support_hours_included - plan.support_hours_used)
        monthly_take = hours if unlimited else min(hours, monthly_left)
        pack_need = hours - monthly_take

        try:
            draws: List[PackDraw] = []
            available = 0.0
            if pack_need > 0:
                packs = self._usable_packs(plan.id, now)
                available = sum(p.hours_remaining for p in packs)
                if available < pack_need:
                    raise InsufficientHours(hours, monthly_left + available)

            if monthly_take > 0:
                statement = update(MaintenancePlan).where(MaintenancePlan.id == plan.id)
                if not unlimited:
                    statement = statement.where(
                        MaintenancePlan.support_hours_used + monthly_take <= MaintenancePlan.support_hours_included
                    )
                result = self.session.execute(
                    statement
                    .values(
                        support_hours_used=MaintenancePlan.support_hours_used + monthly_take,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InsufficientHours(hours, monthly_left + available)
                self.session.add(HourLedgerEntry(
                    plan_id=plan.id,
                    hours=monthly_take,
                    source=(LedgerSource.UNLIMITED if unlimited else LedgerSource.MONTHLY).value,
                    description=description,
                    performed_by_id=performed_by_id,
                    created_at=now,
                ))

            if pack_need > 0:
                draws = self._draw_packs(plan, pack_need, packs, now, description, performed_by_id)

            self.session.commit()
            self.session.refresh(plan)
        except InsufficientHours:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Support hour deduction failed for plan %s: %s", plan.id, e)
            raise InfrastructureError("Could not deduct support hours") from e

        logger.info("⏱️ Deducted %s hour(s) from plan %s (monthly %s, packs %s)",
                    hours, plan.id, monthly_take, pack_need)
        return ConsumptionResult(
            hours=hours,
            remaining=available - pack_need,
            draws=draws,
            monthly_hours=monthly_take,
        )

    # ============================================================
    # Change requests
    # ============================================================
    def use_change_request(self, plan: MaintenancePlan, now: Optional[datetime] = None) -> ChangeRequestUsage:
        """
        Count one change request against the current period. The increment
        is conditional on the allowance, so concurrent submissions cannot
        overshoot it. Unlimited tiers only count.
        """
        now = now or utcnow()
        if not plan.is_entitled(now):
            raise InvalidStateTransition("maintenance_plan", plan.status, "change request")

        unlimited = plan.change_requests_included == UNLIMITED
        statement = update(MaintenancePlan).where(MaintenancePlan.id == plan.id)
        if not unlimited:
            statement = statement.where(
                MaintenancePlan.change_requests_used < MaintenancePlan.change_requests_included
            )
        try:
            result = self.session.execute(
                statement
                .values(
                    change_requests_used=MaintenancePlan.change_requests_used + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ChangeRequestLimitReached(plan.change_requests_included)
            self.session.commit()
            self.session.refresh(plan)
        except ChangeRequestLimitReached:
            self.session.rollback()
            logger.info("🚫 Plan %s has no change requests left", plan.id)
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Change request count failed for plan %s: %s", plan.id, e)
            raise InfrastructureError("Could not record change request") from e

        logger.info("📝 Plan %s used change request %s", plan.id, plan.change_requests_used)
        return ChangeRequestUsage(
            used=plan.change_requests_used,
            included=plan.change_requests_included,
            remaining=None if unlimited else max(0, plan.change_requests_included - plan.change_requests_used),
        )

    # ============================================================
    # Expiry
    # ============================================================
    def expire(self, pack: HourPack, now: Optional[datetime] = None) -> bool:
        """Deactivate ``pack`` if it is past expiry or empty. Returns whether it changed."""
        now = now or utcnow()
        if not pack.is_active:
            return False
        if not (pack.is_expired(now) or pack.hours_remaining <= 0):
            return False

        pack.is_active = False
        try:
            self.session.add(pack)
            self.session.commit()
            self.session.refresh(pack)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise InfrastructureError("Could not expire hour pack") from e
        logger.info("⌛ Hour pack %s expired with %s hour(s) left", pack.id, pack.hours_remaining)
        return True

    def expire_due(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        try:
            result = self.session.execute(
                update(HourPack)
                .where(
                    HourPack.is_active == True,  # noqa: E712
                    or_(
                        HourPack.expires_at <= now,
                        HourPack.hours_remaining <= 0,
                    ),
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Hour pack expiry sweep failed: %s", e)
            raise InfrastructureError("Could not expire hour packs") from e

        expired = result.rowcount or 0
        logger.info("⌛ Expired %s hour pack(s)", expired)
        return expired

    # ============================================================
    # Rollover
    # ============================================================
    def _rollover_on_hand(self, plan_id: int, now: datetime) -> float:
        held = self.session.exec(
            select(func.coalesce(func.sum(HourPack.hours_remaining), 0.0)).where(
                HourPack.plan_id == plan_id,
                HourPack.pack_type == HourPackType.ROLLOVER.value,
                HourPack.is_active == True,  # noqa: E712
                HourPack.expires_at > now,
            )
        ).one()
        return float(held or 0.0)

    def roll_over_unused_hours(self, plan: MaintenancePlan, now: Optional[datetime] = None) -> Optional[HourPack]:
        """
        Carry the closing period's unused allowance into a ROLLOVER pack that
        expires after the tier's rollover window. Rollover hours held at any
        time never exceed the tier's cap. Must run before the period's usage
        is reset.
        """
        now = now or utcnow()
        if plan.status == PlanStatus.CANCELLED.value or plan.support_hours_included == UNLIMITED:
            return None
        try:
            config = get_tier(plan.tier)
        except ValueError:
            logger.warning("⚠️ Plan %s has unknown tier %s; no rollover", plan.id, plan.tier)
            return None
        if config.is_unlimited or config.rollover_cap <= 0 or config.rollover_expiry_days <= 0:
            return None

        unused = max(0.0, plan.support_hours_included - plan.support_hours_used)
        capacity = max(0.0, config.rollover_cap - self._rollover_on_hand(plan.id, now))
        hours = min(unused, capacity)
        if hours <= 0:
            logger.info("ℹ️ Nothing to roll over for plan %s (unused %s, capacity %s)", plan.id, unused, capacity)
            return None

        pack = self.issue(
            plan,
            hours,
            ExpiryPolicy(config.rollover_expiry_days),
            pack_type=HourPackType.ROLLOVER.value,
            cost=0,
            now=now,
        )
        logger.info("🔁 Rolled %s unused hour(s) of plan %s into pack %s", hours, plan.id, pack.id)
        return pack

    # ============================================================
    # Reporting
    # ============================================================
    def balance(self, plan: MaintenancePlan, now: Optional[datetime] = None) -> HoursBalance:
        now = now or utcnow()
        packs = self.session.exec(
            select(HourPack)
            .where(
                HourPack.plan_id == plan.id,
                HourPack.is_active == True,  # noqa: E712
                HourPack.hours_remaining > 0,
                or_(HourPack.expires_at.is_(None), HourPack.expires_at > now),
            )
            .order_by(HourPack.expires_at.is_(None), HourPack.expires_at, HourPack.id)
        ).all()

        pack_hours = sum(p.hours_remaining for p in packs)
        horizon = now + timedelta(days=EXPIRY_WARNING_DAYS)
        expiring = [
            ExpiringPack(
                pack_id=p.id,
                hours_remaining=p.hours_remaining,
                expires_at=p.expires_at,
                days_left=p.days_until_expiry(now),
            )
            for p in packs
            if p.expires_at is not None and p.expires_at <= horizon
        ]

        extras = dict(
            expiring_soon=expiring,
            rollover_hours=sum(p.hours_remaining for p in packs if p.pack_type == HourPackType.ROLLOVER.value),
            change_requests_included=plan.change_requests_included,
            change_requests_used=plan.change_requests_used,
            change_requests_remaining=(
                None if plan.change_requests_included == UNLIMITED
                else max(0, plan.change_requests_included - plan.change_requests_used)
            ),
        )

        if plan.support_hours_included == UNLIMITED:
            return HoursBalance(
                unlimited=True,
                monthly_included=UNLIMITED,
                monthly_used=plan.support_hours_used,
                monthly_remaining=None,
                pack_hours=pack_hours,
                total_available=None,
                **extras,
            )

        monthly_remaining = max(0.0, plan.support_hours_included - plan.support_hours_used)
        return HoursBalance(
            unlimited=False,
            monthly_included=plan.support_hours_included,
            monthly_used=plan.support_hours_used,
            monthly_remaining=monthly_remaining,
            pack_hours=pack_hours,
            total_available=monthly_remaining + pack_hours,
            **extras,
        )

    # ============================================================
    # Purchases
    # ============================================================
    def credit_checkout(
        self,
        plan: MaintenancePlan,
        checkout: CheckoutSummary,
        user_id: Optional[int] = None,
    ) -> HourPack:
        """Issue the pack a paid checkout bought. Safe to call repeatedly."""
        metadata = checkout.metadata
        if checkout.payment_status != "paid":
            raise CheckoutRejected(f"Checkout {checkout.id} is not paid")
        if metadata.get("type") != "hour-pack":
            raise CheckoutRejected(f"Checkout {checkout.id} is not an hour pack purchase")
        if metadata.get("plan_id") != str(plan.id):
            raise CheckoutRejected(f"Checkout {checkout.id} belongs to another plan")
        if user_id is not None and metadata.get("user_id") != str(user_id):
            raise CheckoutRejected(f"Checkout {checkout.id} was made by another user")

        try:
            config = get_hour_pack(metadata.get("pack_type", ""))
        except ValueError as e:
            raise CheckoutRejected(str(e)) from e

        return self.issue_from_catalog(
            plan,
            config.pack_type.value,
            stripe_payment_id=checkout.payment_reference,
        )

    def credit_from_checkout(self, plan: MaintenancePlan, checkout_session_id: str, user_id: int) -> HourPack:
        """
        Verify a checkout with Stripe and credit it. Stripe failures surface
        here, since nothing local has changed yet.
        """
        if self.payments is None:
            raise ValueError("Crediting a checkout needs a PaymentSync")
        checkout = self.payments.retrieve_checkout_session(checkout_session_id)
        return self.credit_checkout(plan, checkout, user_id)
