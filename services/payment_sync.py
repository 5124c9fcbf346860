# ================================================================
# services/payment_sync.py: Stripe customer / subscription sync
# ================================================================
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from core.config import settings
from core.exceptions import ExternalSyncFailed, InfrastructureError
from core.tiers import get_hour_pack
from models.models import MaintenancePlan, Organization, utcnow

logger = logging.getLogger(__name__)

# ------------------------
# STRIPE CONFIG
# ------------------------
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Stripe epoch seconds to the naive UTC datetimes stored locally."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def subscription_period(subscription: Any):
    """
    (start, end) of the current billing period.

    Newer API versions report the period on the subscription items instead of
    the subscription itself.
    """
    start = stripe_field(subscription, "current_period_start")
    end = stripe_field(subscription, "current_period_end")
    if end is None:
        items = stripe_field(stripe_field(subscription, "items"), "data", [])
        if items:
            start = stripe_field(items[0], "current_period_start")
            end = stripe_field(items[0], "current_period_end")
    return from_timestamp(start), from_timestamp(end)


@dataclass
class CheckoutSummary:
    id: str
    payment_status: Optional[str]
    payment_intent: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def payment_reference(self) -> str:
        """What a paid checkout is deduplicated by."""
        return self.payment_intent or self.id

    @classmethod
    def from_stripe(cls, checkout: Any) -> "CheckoutSummary":
        metadata = stripe_field(checkout, "metadata", {})
        return cls(
            id=checkout["id"],
            payment_status=stripe_field(checkout, "payment_status"),
            payment_intent=stripe_field(checkout, "payment_intent"),
            subscription=stripe_field(checkout, "subscription"),
            customer=stripe_field(checkout, "customer"),
            metadata={k: str(v) for k, v in dict(metadata).items()},
        )


@dataclass
class CheckoutLink:
    session_id: str
    url: str


class PaymentSync:
    """
    Thin wrapper over the Stripe SDK.

    Every failure comes out as ExternalSyncFailed; deciding whether that
    blocks anything is the caller's business.
    """

    def __init__(self, session: Session, api_key: Optional[str] = None):
        self.session = session
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    # ============================================================
    # Internals
    # ============================================================
    def _call(self, action: str, method, *args, **kwargs):
        if not self.api_key:
            raise ExternalSyncFailed(action, "Stripe is not configured")
        try:
            return method(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("⚠️ Transient Stripe failure during %s: %s", action, e)
            raise ExternalSyncFailed(action, str(e), transient=True) from e
        except stripe.StripeError as e:
            logger.error("❌ Stripe rejected %s: %s", action, e)
            raise ExternalSyncFailed(action, getattr(e, "user_message", None) or str(e)) from e

    def _persist(self, *rows) -> None:
        try:
            for row in rows:
                self.session.add(row)
            self.session.commit()
            for row in rows:
                self.session.refresh(row)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise InfrastructureError("Could not store Stripe identifiers") from e

    @staticmethod
    def _require_subscription(plan: MaintenancePlan, action: str) -> str:
        if not plan.stripe_subscription_id:
            raise ExternalSyncFailed(action, f"Plan {plan.id} has no Stripe subscription")
        return plan.stripe_subscription_id

    # ============================================================
    # Customers & subscriptions
    # ============================================================
    def ensure_customer(self, organization: Organization, email: Optional[str] = None) -> str:
        """Create-or-fetch the organization's Stripe customer. The id is stored immediately."""
        if organization.stripe_customer_id:
            return organization.stripe_customer_id

        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            name=organization.name,
            email=email,
            metadata={"organization_id": str(organization.id)},
            idempotency_key=f"organization-{organization.id}-customer",
        )
        organization.stripe_customer_id = customer["id"]
        self._persist(organization)
        logger.info("✅ Stripe customer %s created for organization %s", customer["id"], organization.id)
        return organization.stripe_customer_id

    def create_subscription(
        self,
        plan: MaintenancePlan,
        organization: Organization,
        price_id: str,
        email: Optional[str] = None,
    ) -> str:
        if plan.stripe_subscription_id:
            return plan.stripe_subscription_id

        customer_id = self.ensure_customer(organization, email)
        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            metadata={
                "type": "maintenance-plan",
                "maintenance_plan_id": str(plan.id),
                "project_id": str(plan.project_id),
            },
            idempotency_key=f"maintenance-plan-{plan.id}-subscription",
        )

        plan.stripe_customer_id = customer_id
        plan.stripe_subscription_id = subscription["id"]
        start, end = subscription_period(subscription)
        if end:
            plan.current_period_start = start
            plan.current_period_end = end
        plan.updated_at = utcnow()
        self._persist(plan)
        logger.info("✅ Subscription %s created for plan %s", subscription["id"], plan.id)
        return plan.stripe_subscription_id

    def pause_subscription(self, plan: MaintenancePlan) -> None:
        subscription_id = self._require_subscription(plan, "pause")
        self._call(
            "pause",
            stripe.Subscription.modify,
            subscription_id,
            pause_collection={"behavior": "void"},
        )

    def resume_subscription(self, plan: MaintenancePlan) -> None:
        subscription_id = self._require_subscription(plan, "resume")
        # An empty string unsets pause_collection
        self._call("resume", stripe.Subscription.modify, subscription_id, pause_collection="")

    def cancel_at_period_end(self, plan: MaintenancePlan) -> None:
        subscription_id = self._require_subscription(plan, "cancel_at_period_end")
        self._call(
            "cancel_at_period_end",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    def change_subscription_price(self, plan: MaintenancePlan, price_id: str) -> None:
        subscription_id = self._require_subscription(plan, "change_price")
        subscription = self.retrieve_subscription(subscription_id)
        items = stripe_field(stripe_field(subscription, "items"), "data", [])
        if not items:
            raise ExternalSyncFailed("change_price", f"Subscription {subscription_id} has no items")

        self._call(
            "change_price",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": items[0]["id"], "price": price_id}],
            proration_behavior="create_prorations",
        )

    def retrieve_subscription(self, subscription_id: str):
        return self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)

    def subscription_period_end(self, subscription_id: str) -> Optional[datetime]:
        _, end = subscription_period(self.retrieve_subscription(subscription_id))
        return end

    # ============================================================
    # Checkout (hour packs)
    # ============================================================
    def retrieve_checkout_session(self, session_id: str) -> CheckoutSummary:
        checkout = self._call("retrieve_checkout_session", stripe.checkout.Session.retrieve, session_id)
        return CheckoutSummary.from_stripe(checkout)

    def create_hour_pack_checkout(
        self,
        plan: MaintenancePlan,
        pack_type: str,
        user_id: int,
        email: Optional[str] = None,
    ) -> CheckoutLink:
        pack = get_hour_pack(pack_type)
        description = (
            "Never expires" if pack.expiry.never_expires
            else f"Expires {pack.expiry.days} days after purchase"
        )

        checkout = self._call(
            "create_hour_pack_checkout",
            stripe.checkout.Session.create,
            mode="payment",
            customer=plan.stripe_customer_id or None,
            customer_email=None if plan.stripe_customer_id else email,
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "unit_amount": pack.cost,
                    "product_data": {
                        "name": f"{pack.name} ({pack.hours} hours)",
                        "description": description,
                    },
                },
                "quantity": 1,
            }],
            metadata={
                "type": "hour-pack",
                "plan_id": str(plan.id),
                "pack_type": pack.pack_type.value,
                "hours": str(pack.hours),
                "user_id": str(user_id),
            },
            success_url=settings.HOUR_PACK_SUCCESS_URL,
            cancel_url=settings.HOUR_PACK_CANCEL_URL,
            idempotency_key=f"hour-pack-{plan.id}-{pack.pack_type.value}-{user_id}-{uuid.uuid4().hex}",
        )
        logger.info("💳 Hour pack checkout %s opened for plan %s", checkout["id"], plan.id)
        return CheckoutLink(session_id=checkout["id"], url=checkout["url"])
