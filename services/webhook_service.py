# ================================================================
# services/webhook_service.py: Stripe webhook event processing
# ================================================================
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.exceptions import DomainError
from models.models import MaintenancePlan, PlanStatus, WebhookEvent, utcnow
from services.hour_service import HourPackLedger
from services.payment_sync import CheckoutSummary, from_timestamp, stripe_field, subscription_period
from services.plan_service import PlanLifecycle

logger = logging.getLogger(__name__)


class WebhookProcessor:
    """
    Applies verified Stripe events to local plans and packs.

    Every delivery is logged in ``webhook_event``; an event id that was
    already processed is skipped. Handler failures are stored on the event
    row instead of raised, so Stripe is always acknowledged.
    """

    def __init__(self, session: Session, lifecycle: PlanLifecycle, ledger: HourPackLedger):
        self.session = session
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.handlers = {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
        }

    def _record(self, event: Dict[str, Any]) -> Optional[WebhookEvent]:
        """Log the delivery. Returns None when the event was already processed."""
        existing = self.session.exec(
            select(WebhookEvent).where(WebhookEvent.stripe_event_id == event["id"])
        ).first()
        if existing:
            return None if existing.processed else existing

        record = WebhookEvent(
            stripe_event_id=event["id"],
            event_type=event.get("type", "unknown"),
            payload=json.dumps(event, default=str),
        )
        try:
            self.session.add(record)
            self.session.commit()
            self.session.refresh(record)
        except IntegrityError:
            # Concurrent delivery of the same event
            self.session.rollback()
            return None
        return record

    def process(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type", "unknown")
        record = self._record(event)
        if record is None:
            logger.info("ℹ️ Duplicate webhook %s (%s) ignored", event["id"], event_type)
            return {"status": "duplicate", "event": event_type}

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("ℹ️ Unhandled event type: %s", event_type)
            record.processed = True
            self._save(record)
            return {"status": "ignored", "event": event_type}

        try:
            handler(event["data"]["object"])
            record.processed = True
            record.processing_error = None
            status = "success"
            logger.info("✅ Webhook %s (%s) processed", event["id"], event_type)
        except (DomainError, SQLAlchemyError, KeyError, ValueError, TypeError) as e:
            self.session.rollback()
            record.processing_error = f"{type(e).__name__}: {e}"[:500]
            status = "error"
            logger.error("❌ Error processing webhook event %s: %s", event_type, e)

        self._save(record)
        return {"status": status, "event": event_type}

    def _save(self, record: WebhookEvent) -> None:
        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("❌ Could not update webhook event %s: %s", record.stripe_event_id, e)

    def _plan_by_subscription(self, subscription_id: Optional[str]) -> Optional[MaintenancePlan]:
        if not subscription_id:
            return None
        return self.session.exec(
            select(MaintenancePlan).where(MaintenancePlan.stripe_subscription_id == subscription_id)
        ).first()

    # ============================================================
    # Handlers
    # ============================================================
    def handle_checkout_session_completed(self, checkout: Dict[str, Any]) -> None:
        metadata = stripe_field(checkout, "metadata", {})
        purchase = metadata.get("type")

        if purchase == "hour-pack":
            plan = self.session.get(MaintenancePlan, int(metadata["plan_id"]))
            if plan is None:
                raise ValueError(f"Maintenance plan {metadata['plan_id']} not found")
            self.ledger.credit_checkout(plan, CheckoutSummary.from_stripe(checkout))
            return

        if purchase == "maintenance-plan":
            plan = self.session.get(MaintenancePlan, int(metadata["maintenance_plan_id"]))
            if plan is None:
                raise ValueError(f"Maintenance plan {metadata['maintenance_plan_id']} not found")

            subscription_id = stripe_field(checkout, "subscription")
            if subscription_id and not plan.stripe_subscription_id:
                plan.stripe_subscription_id = subscription_id
                plan.stripe_customer_id = stripe_field(checkout, "customer") or plan.stripe_customer_id
                plan.updated_at = utcnow()
                self.session.add(plan)
                self.session.commit()
                self.session.refresh(plan)

            if plan.status == PlanStatus.PENDING.value:
                self.lifecycle.activate(plan)
            return

        logger.info("ℹ️ Checkout %s has no handled purchase type", checkout.get("id"))

    def handle_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        subscription_id = stripe_field(invoice, "subscription") or stripe_field(
            stripe_field(stripe_field(invoice, "parent"), "subscription_details"), "subscription"
        )
        plan = self._plan_by_subscription(subscription_id)
        if plan is None:
            logger.info("ℹ️ Invoice %s is not for a maintenance plan", invoice.get("id"))
            return

        lines = stripe_field(stripe_field(invoice, "lines"), "data", [])
        period = stripe_field(lines[0], "period", {}) if lines else {}
        start = from_timestamp(stripe_field(period, "start") or stripe_field(invoice, "period_start"))
        end = from_timestamp(stripe_field(period, "end") or stripe_field(invoice, "period_end"))

        if plan.status == PlanStatus.PENDING.value:
            plan.current_period_start = start
            self.lifecycle.activate(plan, period_end=end)
            return

        # A new billing period carries unused hours over, then resets the allowance
        if start and (plan.current_period_start is None or start > plan.current_period_start):
            self.ledger.roll_over_unused_hours(plan)
            plan.support_hours_used = 0.0
            plan.change_requests_used = 0
        if start:
            plan.current_period_start = start
        if end:
            plan.current_period_end = end
        plan.updated_at = utcnow()
        self.session.add(plan)
        self.session.commit()
        logger.info("✅ Updated billing period for plan %s", plan.id)

    def handle_subscription_updated(self, subscription: Dict[str, Any]) -> None:
        plan = self._plan_by_subscription(subscription["id"])
        if plan is None:
            return
        start, end = subscription_period(subscription)
        if end:
            plan.current_period_start = start or plan.current_period_start
            plan.current_period_end = end
            plan.updated_at = utcnow()
            self.session.add(plan)
            self.session.commit()
            logger.info("✅ Updated subscription %s", subscription["id"])

    def handle_subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        plan = self._plan_by_subscription(subscription["id"])
        if plan is None:
            return
        if not plan.is_live:
            logger.info("ℹ️ Subscription %s ended for %s plan %s", subscription["id"], plan.status, plan.id)
            return
        self.lifecycle.cancel(plan, sync=False)
        logger.info("🗑️ Subscription %s canceled", subscription["id"])
