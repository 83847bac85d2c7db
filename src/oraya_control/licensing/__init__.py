from oraya_control.licensing.enforcer import (
    EnforcementResult,
    NO_PLAN_DEVICE_LIMIT,
    PlanEnforcer,
    is_unlimited,
)

__all__ = [
    "EnforcementResult",
    "NO_PLAN_DEVICE_LIMIT",
    "PlanEnforcer",
    "is_unlimited",
]
