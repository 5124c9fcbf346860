# routes/access.py
from fastapi import APIRouter, Depends
from sqlmodel import Session
from typing import List

from core.database import get_session
from core.dependencies import get_access_context
from schemas.access_schema import AccessContextRead, AccessGrantRead, ProjectRead
from services.access_service import AccessContext, AccessGate

router = APIRouter(prefix="/client", tags=["Access"])


# ==================================================================
#  ✅ Who am I allowed to see?
# ==================================================================
@router.get("/access", response_model=AccessContextRead)
def get_access(context: AccessContext = Depends(get_access_context)):
    return AccessContextRead(
        user_id=context.user_id,
        organization_ids=sorted(context.organization_ids),
        lead_project_ids=sorted(context.lead_project_ids),
        grants=[
            AccessGrantRead(
                reason=g.reason.value,
                organization_id=g.organization_id,
                project_id=g.project_id,
                lead_id=g.lead_id,
            )
            for g in context.grants
        ],
        capabilities=sorted(c.value for c in context.capabilities),
    )


# ==================================================================
#  ✅ Projects reachable through membership or lead ownership
# ==================================================================
@router.get("/projects", response_model=List[ProjectRead])
def list_projects(
    context: AccessContext = Depends(get_access_context),
    session: Session = Depends(get_session),
):
    return AccessGate(session).accessible_projects(context)
