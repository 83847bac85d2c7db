from .base import Base, GUID
from .users import (
    ADMIN_ROLE_LEVELS,
    SEAT_STATUSES,
    AccountStatus,
    AdminRole,
    MemberRole,
    MemberStatus,
    PlatformAdmin,
    Team,
    TeamMember,
    User,
)
from .licensing import (
    EVERYTHING_FEATURE,
    QUOTA_COLUMNS,
    BillingCycle,
    DeviceActivation,
    License,
    LicenseStatus,
    Plan,
    QuotaType,
    StripeCustomer,
)
from .settings import PlatformSetting, SettingCategory
from .audit import AdminAuditLog, AuditAction, AuditResourceType
from .bridge import ApiKey, ResearchFinding, ResearchJob, ResearchJobStatus

__all__ = [
    "ADMIN_ROLE_LEVELS",
    "AccountStatus",
    "AdminAuditLog",
    "AdminRole",
    "ApiKey",
    "AuditAction",
    "AuditResourceType",
    "Base",
    "BillingCycle",
    "DeviceActivation",
    "EVERYTHING_FEATURE",
    "GUID",
    "License",
    "LicenseStatus",
    "MemberRole",
    "MemberStatus",
    "Plan",
    "PlatformAdmin",
    "PlatformSetting",
    "QUOTA_COLUMNS",
    "QuotaType",
    "ResearchFinding",
    "ResearchJob",
    "ResearchJobStatus",
    "SEAT_STATUSES",
    "SettingCategory",
    "StripeCustomer",
    "Team",
    "TeamMember",
    "User",
]
