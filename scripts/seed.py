# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.capabilities import UserRole
from core.database import engine, create_db_and_tables
from core.security import create_token_for_user
from core.tiers import HourPackType, MaintenanceTier
from models.models import Lead, MembershipRole, Organization, OrganizationMember, Project, User
from services.hour_service import HourPackLedger
from services.lead_service import convert_lead, normalize_email
from services.plan_service import PlanLifecycle

# ✅ Load environment variables
load_dotenv()


def get_or_create_user(session: Session, email: str, full_name: str, role: UserRole) -> User:
    email = normalize_email(email)
    user = session.exec(select(User).where(User.email == email)).first()
    if not user:
        user = User(full_name=full_name, email=email, role=role.value, is_active=True)
        session.add(user)
        session.commit()
        session.refresh(user)
        print(f"✅ Added {role.value} user {email}")
    return user


def seed_dev_data():
    """Seed development database with a demo tenant, a converted lead and plans."""
    print("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        # -----------------------------
        # 🏢 Demo Organization
        # -----------------------------
        org = session.exec(
            select(Organization).where(Organization.name == "Demo Organization")
        ).first()

        if not org:
            org = Organization(name="Demo Organization", slug="demo")
            session.add(org)
            session.commit()
            session.refresh(org)
            print("✅ Created Demo Organization")

        # -----------------------------
        # 👥 Users
        # -----------------------------
        admin = get_or_create_user(session, "admin@demo.com", "Admin User", UserRole.ADMIN)
        client = get_or_create_user(session, "client@demo.com", "Client User", UserRole.CLIENT)
        lead_owner = get_or_create_user(session, "Prospect@Demo.com", "Prospect Owner", UserRole.CLIENT)

        if not session.get(OrganizationMember, (client.id, org.id)):
            session.add(OrganizationMember(user_id=client.id, organization_id=org.id, role=MembershipRole.OWNER.value))
            session.commit()
            print("✅ Client joined Demo Organization")

        # -----------------------------
        # 📁 Projects
        # -----------------------------
        website = session.exec(select(Project).where(Project.name == "Demo Website")).first()
        if not website:
            website = Project(name="Demo Website", organization_id=org.id)
            session.add(website)
            session.commit()
            session.refresh(website)

        # A project reachable only through its converted lead
        lead = session.exec(select(Lead).where(Lead.email == lead_owner.email)).first()
        if not lead:
            lead = Lead(name="Prospect Owner", email=lead_owner.email, organization_name="Prospect Nonprofit")
            session.add(lead)
            session.commit()
            session.refresh(lead)
            prospect_site = Project(name="Prospect Website")
            session.add(prospect_site)
            session.commit()
            session.refresh(prospect_site)
            convert_lead(session, lead, prospect_site)
            print("✅ Converted demo lead into a project")

        # -----------------------------
        # 🧾 Plans & hours
        # -----------------------------
        lifecycle = PlanLifecycle(session)
        if not website.plans:
            plan = lifecycle.create_plan(website, MaintenanceTier.DIRECTOR.value).plan
            lifecycle.activate(plan)
            HourPackLedger(session).issue_from_catalog(plan, HourPackType.SMALL.value)
            print(f"✅ Active {plan.tier} plan {plan.id} with a {HourPackType.SMALL.value} hour pack")

        print("🌱 Development data seeding complete.")
        print("🔑 Demo bearer tokens:")
        for user in (admin, client, lead_owner):
            print(f"   {user.email}: {create_token_for_user(user)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the StudioDesk database.")
    parser.add_argument(
        "--env",
        choices=["dev"],
        default="dev",
        help="Select environment to seed",
    )
    args = parser.parse_args()

    if args.env == "dev":
        seed_dev_data()
