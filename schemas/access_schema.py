# access_schema.py
from pydantic import BaseModel, ConfigDict
from typing import Optional, List
from datetime import datetime


class AccessGrantRead(BaseModel):
    reason: str
    organization_id: Optional[int] = None
    project_id: Optional[int] = None
    lead_id: Optional[int] = None


class AccessContextRead(BaseModel):
    user_id: int
    organization_ids: List[int]
    lead_project_ids: List[int]
    grants: List[AccessGrantRead]
    capabilities: List[str]


class ProjectRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    organization_id: Optional[int] = None
    lead_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
