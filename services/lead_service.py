# services/lead_service.py
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from core.exceptions import InfrastructureError, InvalidStateTransition
from models.models import Lead, LeadStatus, Project, utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Emails are matched case-insensitively, so they are stored lower-cased."""
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def convert_lead(session: Session, lead: Lead, project: Project) -> Lead:
    """
    Link ``lead`` to the project it became. This is the only place a lead's
    ``project_id`` is set, which is what gives the lead's email owner access
    to the project.
    """
    if lead.is_converted or lead.status == LeadStatus.CONVERTED.value:
        raise InvalidStateTransition("lead", lead.status, LeadStatus.CONVERTED.value)

    lead.email = normalize_email(lead.email)
    lead.project_id = project.id
    lead.converted_at = utcnow()
    lead.status = LeadStatus.CONVERTED.value
    project.lead_id = lead.id

    try:
        session.add(lead)
        session.add(project)
        session.commit()
        session.refresh(lead)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("❌ Could not convert lead %s: %s", lead.id, e)
        raise InfrastructureError("Could not convert lead") from e

    logger.info("🤝 Lead %s converted into project %s", lead.id, project.id)
    return lead
