from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from oraya_control.models.licensing import BillingCycle, LicenseStatus


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class AdminProfile(BaseModel):
    id: str
    email: str
    full_name: Optional[str]
    role: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    admin: AdminProfile


# ----------------------------------------------------------------------
# Organizations
# ----------------------------------------------------------------------


class OwnerSummary(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str]
    avatar_url: Optional[str]
    status: str
    plan_id: Optional[str]
    owner: OwnerSummary
    member_count: int
    max_members: Optional[int]
    max_agents: Optional[int]
    created_at: datetime
    updated_at: datetime


class OrganizationStats(BaseModel):
    total: int
    active: int
    revenue: float
    growth: float


class OrganizationListResponse(BaseModel):
    organizations: list[OrganizationResponse]
    stats: OrganizationStats


class TeamResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str]
    owner_id: uuid.UUID
    plan_id: Optional[str]
    max_members: Optional[int]
    max_agents: Optional[int]
    is_active: bool
    suspended_at: Optional[datetime]
    suspension_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrganizationCreate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    owner_id: Optional[str] = None
    description: Optional[str] = None
    plan_id: Optional[str] = None
    max_members: Optional[int] = None
    max_agents: Optional[int] = None


class OrganizationUpdates(BaseModel):
    """Fields an admin may change on a team.

    Only fields present in the request are applied.
    """

    name: Optional[str] = None
    description: Optional[str] = None
    plan_id: Optional[str] = None
    max_members: Optional[int] = None
    max_agents: Optional[int] = None
    suspend: Optional[bool] = None
    suspension_reason: Optional[str] = None


class OrganizationUpdateRequest(BaseModel):
    org_id: Optional[str] = None
    updates: OrganizationUpdates = Field(default_factory=OrganizationUpdates)


class MemberCreate(BaseModel):
    user_id: str
    role: str = "member"
    status: str = "active"
    can_manage_members: bool = False
    can_manage_billing: bool = False


class TeamMemberResponse(BaseModel):
    id: uuid.UUID
    team_id: uuid.UUID
    user_id: uuid.UUID
    role: str
    status: str
    can_manage_members: bool
    can_manage_billing: bool
    joined_at: Optional[datetime]

    class Config:
        from_attributes = True


# ----------------------------------------------------------------------
# Users and licenses
# ----------------------------------------------------------------------


class LicenseResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: str
    license_key: str
    status: str
    billing_cycle: str
    is_trial: bool
    activated_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class UserListItem(BaseModel):
    id: str
    email: str
    full_name: Optional[str]
    username: Optional[str]
    avatar_url: Optional[str]
    account_status: str
    ora_key: Optional[str]
    email_confirmed: bool
    created_at: datetime
    last_sign_in_at: Optional[datetime]
    license_id: Optional[str]
    plan_id: Optional[str]
    license_key: Optional[str]
    license_status: Optional[str]
    billing_cycle: Optional[str]
    ai_calls_used: int
    tokens_used: int
    amount_paid: float


class UserStats(BaseModel):
    total: int
    active: int
    trial: int
    churned: int


class UserListResponse(BaseModel):
    users: list[UserListItem]
    stats: UserStats


class UserCreate(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    organization_id: Optional[str] = None


class UserUpdates(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None
    plan_id: Optional[str] = None
    license_status: Optional[LicenseStatus] = None
    billing_cycle: Optional[BillingCycle] = None


class UserUpdateRequest(BaseModel):
    user_id: Optional[str] = None
    updates: UserUpdates = Field(default_factory=UserUpdates)


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    price_monthly: float
    price_yearly: float
    currency: str
    max_agents: Optional[int]
    max_conversations_per_month: Optional[int]
    max_ai_calls_per_month: Optional[int]
    max_token_usage_per_month: Optional[int]
    max_devices: Optional[int]
    features: list[str]
    is_active: bool
    is_public: bool
    display_order: int
    badge: Optional[str]
    requires_organization: bool

    class Config:
        from_attributes = True


class PlanCreate(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price_monthly: Optional[float] = None
    price_yearly: Optional[float] = None
    currency: Optional[str] = None
    max_agents: Optional[int] = None
    max_conversations_per_month: Optional[int] = None
    max_ai_calls_per_month: Optional[int] = None
    max_token_usage_per_month: Optional[int] = None
    max_devices: Optional[int] = None
    features: Optional[list[str]] = None
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None
    display_order: Optional[int] = None
    badge: Optional[str] = None
    requires_organization: Optional[bool] = None


class PlanUpdateRequest(BaseModel):
    plan_id: Optional[str] = None
    updates: dict[str, Any] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Settings and audit
# ----------------------------------------------------------------------


class SettingsUpdateRequest(BaseModel):
    settings: Optional[list[dict[str, Any]]] = None


class AuditLogResponse(BaseModel):
    id: str
    admin_id: Optional[str]
    admin_email: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    changes: Optional[dict[str, Any]]
    request_metadata: Optional[dict[str, Any]]
    ip_address: Optional[str]
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: list[AuditLogResponse]
    total: int
    limit: int
    offset: int
