# scripts/maintenance_jobs.py
"""
Scheduled jobs for maintenance plans and hour packs.

    python scripts/maintenance_jobs.py repair-tier-defaults
    python scripts/maintenance_jobs.py expire-packs
    python scripts/maintenance_jobs.py pending-sync [--retry]
"""
import os
import sys
import argparse
import logging

from dotenv import load_dotenv
from sqlmodel import Session

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import engine
from services.hour_service import HourPackLedger
from services.payment_sync import PaymentSync
from services.plan_service import PlanLifecycle

load_dotenv()
logger = logging.getLogger("maintenance_jobs")


def repair_tier_defaults(session: Session) -> int:
    fixed = PlanLifecycle(session).repair_tier_defaults()
    print(f"🔧 Repaired {fixed} plan(s)")
    return fixed


def expire_packs(session: Session) -> int:
    expired = HourPackLedger(session).expire_due()
    print(f"⌛ Expired {expired} hour pack(s)")
    return expired


def pending_sync(session: Session, retry: bool = False) -> int:
    lifecycle = PlanLifecycle(session, PaymentSync(session))
    plans = lifecycle.plans_pending_sync()
    print(f"🔁 {len(plans)} plan(s) waiting on Stripe")

    still_pending = 0
    for plan in plans:
        print(f"   plan {plan.id}: {plan.pending_sync_action} ({plan.last_sync_error or 'no error recorded'})")
        if retry:
            result = lifecycle.retry_sync(plan)
            if not result.synced:
                still_pending += 1
    if retry:
        print(f"✅ {len(plans) - still_pending} synced, {still_pending} still pending")
    return still_pending


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="StudioDesk maintenance jobs.")
    sub = parser.add_subparsers(dest="job", required=True)
    sub.add_parser("repair-tier-defaults", help="Re-derive allowances left at the generic defaults")
    sub.add_parser("expire-packs", help="Deactivate expired or empty hour packs")
    pending = sub.add_parser("pending-sync", help="List plans whose Stripe sync failed")
    pending.add_argument("--retry", action="store_true", help="Replay the outstanding Stripe action")
    args = parser.parse_args()

    with Session(engine) as session:
        if args.job == "repair-tier-defaults":
            repair_tier_defaults(session)
        elif args.job == "expire-packs":
            expire_packs(session)
        elif args.job == "pending-sync":
            pending_sync(session, retry=args.retry)
