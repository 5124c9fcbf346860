# core/tiers.py
"""
Centralized maintenance tier and hour pack catalog.

Every place that needs included hours, change requests, pricing or pack
expiry reads it from here instead of hardcoding numbers.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

# -1 marks an unlimited allowance (fair-use tiers)
UNLIMITED = -1

# Column defaults the plan table has always carried. Application code must
# never let these stand in for a tier's real values.
GENERIC_SUPPORT_HOURS_DEFAULT = 4
GENERIC_CHANGE_REQUESTS_DEFAULT = 3


class MaintenanceTier(str, Enum):
    ESSENTIALS = "ESSENTIALS"
    DIRECTOR = "DIRECTOR"
    COO = "COO"


class HourPackType(str, Enum):
    SMALL = "SMALL"
    MEDIUM = "MEDIUM"
    LARGE = "LARGE"
    PREMIUM = "PREMIUM"
    CUSTOM = "CUSTOM"
    ROLLOVER = "ROLLOVER"  # unused monthly hours carried into the next period


@dataclass(frozen=True)
class TierConfig:
    tier: MaintenanceTier
    name: str
    monthly_price: int  # cents
    support_hours_included: int
    change_requests_included: int
    rollover_expiry_days: int
    rollover_cap: int  # most carried-over hours a plan may hold at once

    @property
    def is_unlimited(self) -> bool:
        return self.support_hours_included == UNLIMITED


@dataclass(frozen=True)
class ExpiryPolicy:
    """How long an issued hour pack stays usable. ``days=None`` never expires."""

    days: Optional[int]

    @classmethod
    def never(cls) -> "ExpiryPolicy":
        return cls(days=None)

    @property
    def never_expires(self) -> bool:
        return self.days is None


@dataclass(frozen=True)
class HourPackConfig:
    pack_type: HourPackType
    name: str
    hours: int
    cost: int  # cents
    expiry: ExpiryPolicy


TIERS: Dict[MaintenanceTier, TierConfig] = {
    MaintenanceTier.ESSENTIALS: TierConfig(
        tier=MaintenanceTier.ESSENTIALS,
        name="Nonprofit Essentials",
        monthly_price=50000,
        support_hours_included=8,
        change_requests_included=3,
        rollover_expiry_days=60,
        rollover_cap=16,
    ),
    MaintenanceTier.DIRECTOR: TierConfig(
        tier=MaintenanceTier.DIRECTOR,
        name="Digital Director Platform",
        monthly_price=75000,
        support_hours_included=16,
        change_requests_included=5,
        rollover_expiry_days=90,
        rollover_cap=32,
    ),
    MaintenanceTier.COO: TierConfig(
        tier=MaintenanceTier.COO,
        name="Digital COO System",
        monthly_price=200000,
        support_hours_included=UNLIMITED,
        change_requests_included=UNLIMITED,
        rollover_expiry_days=0,
        rollover_cap=0,
    ),
}

HOUR_PACKS: Dict[HourPackType, HourPackConfig] = {
    HourPackType.SMALL: HourPackConfig(HourPackType.SMALL, "Quick Boost", 5, 35000, ExpiryPolicy(60)),
    HourPackType.MEDIUM: HourPackConfig(HourPackType.MEDIUM, "Power Pack", 10, 65000, ExpiryPolicy(90)),
    HourPackType.LARGE: HourPackConfig(HourPackType.LARGE, "Mega Pack", 20, 120000, ExpiryPolicy(120)),
    HourPackType.PREMIUM: HourPackConfig(HourPackType.PREMIUM, "Never Expire Pack", 10, 85000, ExpiryPolicy.never()),
}


def catalog_key(value) -> str:
    """Upper-cased catalog id for a plain string or a catalog enum member."""
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().upper()


def get_tier(tier: str) -> TierConfig:
    """Look up a tier by id or enum member. Raises ValueError for unknown tiers."""
    try:
        return TIERS[MaintenanceTier(catalog_key(tier))]
    except (ValueError, KeyError):
        raise ValueError(f"Unknown maintenance tier: {tier}")


def get_hour_pack(pack_type: str) -> HourPackConfig:
    try:
        return HOUR_PACKS[HourPackType(catalog_key(pack_type))]
    except (ValueError, KeyError):
        raise ValueError(f"Unknown hour pack: {pack_type}")
