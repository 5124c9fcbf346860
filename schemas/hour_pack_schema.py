# hour_pack_schema.py
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, List
from datetime import datetime

from core.tiers import HOUR_PACKS, HourPackType


# ---------------------------
# Hour Pack
# ---------------------------
class HourPackRead(BaseModel):
    id: int
    plan_id: int
    pack_type: str
    hours: float
    hours_remaining: float
    cost: int
    purchased_at: datetime
    expires_at: Optional[datetime]
    never_expires: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class ExpiringPackRead(BaseModel):
    pack_id: int
    hours_remaining: float
    expires_at: datetime
    days_left: int

    model_config = ConfigDict(from_attributes=True)


class HoursBalanceRead(BaseModel):
    unlimited: bool
    monthly_included: int
    monthly_used: float
    monthly_remaining: Optional[float]
    pack_hours: float
    total_available: Optional[float]
    expiring_soon: List[ExpiringPackRead] = []
    rollover_hours: float = 0.0
    change_requests_included: int = 0
    change_requests_used: int = 0
    change_requests_remaining: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Purchases
# ---------------------------
class HourPackCheckoutCreate(BaseModel):
    pack_type: HourPackType

    @field_validator("pack_type")
    @classmethod
    def must_be_for_sale(cls, value: HourPackType) -> HourPackType:
        if value not in HOUR_PACKS:
            raise ValueError(f"{value.value} hour packs are not sold")
        return value


class HourPackCheckoutRead(BaseModel):
    checkout_url: str
    session_id: str


class HourPackVerify(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=255)


# ---------------------------
# Consumption
# ---------------------------
class HoursConsume(BaseModel):
    hours: float = Field(..., gt=0, le=1000)
    description: Optional[str] = Field(default=None, max_length=500)


class PackDrawRead(BaseModel):
    pack_id: int
    hours: float

    model_config = ConfigDict(from_attributes=True)


class ConsumptionRead(BaseModel):
    hours: float
    monthly_hours: float
    remaining: float
    draws: List[PackDrawRead]

    model_config = ConfigDict(from_attributes=True)


class ExpireResult(BaseModel):
    packs_expired: int


# ---------------------------
# Change requests
# ---------------------------
class ChangeRequestUsageRead(BaseModel):
    used: int
    included: int
    remaining: Optional[int]

    model_config = ConfigDict(from_attributes=True)
