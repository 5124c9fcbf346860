from .access_schema import AccessGrantRead, AccessContextRead, ProjectRead
from .maintenance_plan_schema import (
    MaintenancePlanCreate, MaintenancePlanRead, MaintenancePlanAdminRead,
    TierChange, PlanTransitionRead, RepairResult
)
from .hour_pack_schema import (
    HourPackRead, ExpiringPackRead, HoursBalanceRead,
    HourPackCheckoutCreate, HourPackCheckoutRead, HourPackVerify,
    HoursConsume, PackDrawRead, ConsumptionRead, ExpireResult
)

__all__ = [
    # Access
    "AccessGrantRead", "AccessContextRead", "ProjectRead",

    # Maintenance plans
    "MaintenancePlanCreate", "MaintenancePlanRead", "MaintenancePlanAdminRead",
    "TierChange", "PlanTransitionRead", "RepairResult",

    # Hours
    "HourPackRead", "ExpiringPackRead", "HoursBalanceRead",
    "HourPackCheckoutCreate", "HourPackCheckoutRead", "HourPackVerify",
    "HoursConsume", "PackDrawRead", "ConsumptionRead", "ExpireResult",
]
