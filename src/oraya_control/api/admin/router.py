from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from oraya_control.api.admin.deps import (
    AdminContext,
    require_admin,
    require_readonly,
    require_superadmin,
)
from oraya_control.api.billing.stripe_client import get_payments_client_factory
from oraya_control.api.errors import (
    DomainRuleViolation,
    ValidationError,
)
from oraya_control.api.pipeline import AdminMutationPipeline, AuditRecord, DependentStep
from oraya_control.api.services.audit import AuditLogFilter, AuditService
from oraya_control.api.services.organizations import (
    OrganizationService,
    TeamMembershipService,
    is_valid_slug,
    normalize_slug,
)
from oraya_control.api.services.plans import (
    UPDATABLE_FIELDS as PLAN_UPDATABLE_FIELDS,
    PlanService,
    is_valid_plan_id,
)
from oraya_control.api.services.settings import (
    PlatformSettingsService,
    get_settings_resolver,
)
from oraya_control.api.services.users import UserService
from oraya_control.licensing import EnforcementResult, PlanEnforcer
from oraya_control.models.audit import AuditAction, AuditResourceType
from oraya_control.models.licensing import BillingCycle, LicenseStatus
from oraya_control.models.users import MemberStatus
from oraya_control.utils.datetime import to_utc

from .schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    LicenseResponse,
    MemberCreate,
    OrganizationCreate,
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationStats,
    OrganizationUpdateRequest,
    OwnerSummary,
    PlanCreate,
    PlanResponse,
    PlanUpdateRequest,
    SettingsUpdateRequest,
    TeamMemberResponse,
    TeamResponse,
    UserCreate,
    UserListItem,
    UserListResponse,
    UserStats,
    UserUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/superadmin", tags=["superadmin"])


def _team(team: Any) -> dict[str, Any]:
    return TeamResponse.model_validate(team).model_dump(mode="json")


def _license(license_row: Any) -> Optional[dict[str, Any]]:
    if license_row is None:
        return None
    return LicenseResponse.model_validate(license_row).model_dump(mode="json")


def _plan(plan: Any) -> dict[str, Any]:
    return PlanResponse.model_validate(plan).model_dump(mode="json")


async def _require_plan(ctx: AdminContext, plan_id: Optional[str]) -> None:
    if plan_id and await PlanEnforcer(ctx.db).get_plan(plan_id) is None:
        raise ValidationError(f'Plan "{plan_id}" does not exist')


def _requires_organization(check: EnforcementResult) -> bool:
    return bool((check.details or {}).get("requires_organization", False))


def _plan_denied(check: EnforcementResult) -> DomainRuleViolation:
    return DomainRuleViolation(
        check.reason,
        status_code=422,
        requires_organization=_requires_organization(check),
    )


# ----------------------------------------------------------------------
# Organizations
# ----------------------------------------------------------------------


@router.get("/organizations", response_model=OrganizationListResponse)
async def list_organizations(
    ctx: AdminContext = Depends(require_readonly),
) -> OrganizationListResponse:
    summaries, stats = await OrganizationService(ctx.db).list_with_stats()
    organizations = []
    for summary in summaries:
        team, owner = summary.team, summary.owner
        organizations.append(
            OrganizationResponse(
                id=str(team.id),
                name=team.name,
                slug=team.slug,
                description=team.description,
                avatar_url=team.avatar_url,
                status=team.status,
                plan_id=team.plan_id,
                owner=OwnerSummary(
                    id=str(team.owner_id),
                    email=owner.email if owner else None,
                    full_name=owner.full_name if owner else None,
                    avatar_url=owner.avatar_url if owner else None,
                ),
                member_count=summary.member_count,
                max_members=team.max_members,
                max_agents=team.max_agents,
                created_at=team.created_at,
                updated_at=team.updated_at,
            )
        )
    return OrganizationListResponse(
        organizations=organizations, stats=OrganizationStats(**stats)
    )


@router.post("/organizations")
async def create_organization(
    payload: OrganizationCreate,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not payload.name or not payload.slug or not payload.owner_id:
        raise ValidationError("name, slug, and owner_id are required")
    slug = normalize_slug(payload.slug)
    if not is_valid_slug(slug):
        raise ValidationError("slug must contain at least one letter or digit")

    orgs = OrganizationService(ctx.db)

    async def slug_available() -> None:
        if await orgs.get_by_slug(slug) is not None:
            raise DomainRuleViolation("Slug already taken")

    async def owner_exists() -> None:
        await UserService(ctx.db).get_or_404(payload.owner_id)

    async def plan_exists() -> None:
        await _require_plan(ctx, payload.plan_id)

    async def add_owner(team: Any) -> Any:
        return await TeamMembershipService(ctx.db).add_owner(team)

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.CREATE_ORGANIZATION, AuditResourceType.TEAM
    ).execute(
        mutate=lambda: orgs.create(
            name=payload.name,
            slug=slug,
            owner_id=payload.owner_id,
            description=payload.description,
            plan_id=payload.plan_id,
            max_members=payload.max_members,
            max_agents=payload.max_agents,
        ),
        validate=[slug_available, owner_exists, plan_exists],
        dependents=[DependentStep("add_owner_membership", add_owner)],
        audit=lambda team: AuditRecord(
            str(team.id),
            {
                "name": payload.name,
                "slug": team.slug,
                "owner_id": payload.owner_id,
                "plan_id": payload.plan_id,
            },
        ),
    )
    return {
        "success": True,
        "organization": _team(outcome.result),
        "warnings": outcome.warnings,
    }


@router.patch("/organizations")
async def update_organization(
    payload: OrganizationUpdateRequest,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not payload.org_id:
        raise ValidationError("org_id required")

    orgs = OrganizationService(ctx.db)
    team = await orgs.get_or_404(payload.org_id)
    updates = payload.updates.model_dump(exclude_unset=True)

    async def member_limit_fits() -> None:
        new_max = updates.get("max_members")
        if new_max is None:
            return
        current = await PlanEnforcer(ctx.db).get_team_member_count(team.id)
        if new_max > 0 and current > new_max:
            raise DomainRuleViolation(
                f"Cannot set max_members to {new_max}: organization already has "
                f"{current} members. Remove members first."
            )

    async def plan_exists() -> None:
        await _require_plan(ctx, updates.get("plan_id"))

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.UPDATE_ORGANIZATION, AuditResourceType.TEAM
    ).execute(
        mutate=lambda: orgs.update(team, updates),
        validate=[member_limit_fits, plan_exists],
        audit=lambda changes: AuditRecord(str(team.id), changes),
    )
    return {
        "success": True,
        "organization": _team(team),
        "warnings": outcome.warnings,
    }


@router.delete("/organizations")
async def delete_organization(
    org_id: Optional[str] = None,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not org_id:
        raise ValidationError("org_id required")

    orgs = OrganizationService(ctx.db)
    team = await orgs.get_or_404(org_id)
    team_id, team_name = str(team.id), team.name

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.DELETE_ORGANIZATION, AuditResourceType.TEAM
    ).execute(
        mutate=lambda: orgs.delete(team),
        audit=lambda _: AuditRecord(team_id, {"name": team_name}),
    )
    return {"success": True, "warnings": outcome.warnings}


@router.post("/organizations/{org_id}/members", status_code=201)
async def add_organization_member(
    org_id: str,
    payload: MemberCreate,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    team = await OrganizationService(ctx.db).get_or_404(org_id)
    user = await UserService(ctx.db).get_or_404(payload.user_id)

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.ADD_MEMBER, AuditResourceType.TEAM
    ).execute(
        mutate=lambda: TeamMembershipService(ctx.db).admit(
            team.id,
            user.id,
            role=payload.role,
            status=payload.status,
            can_manage_members=payload.can_manage_members,
            can_manage_billing=payload.can_manage_billing,
        ),
        audit=lambda member: AuditRecord(
            str(team.id), {"user_id": str(user.id), "role": member.role}
        ),
    )
    return {
        "success": True,
        "member": TeamMemberResponse.model_validate(outcome.result).model_dump(
            mode="json"
        ),
        "warnings": outcome.warnings,
    }


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
async def list_users(
    ctx: AdminContext = Depends(require_readonly),
) -> UserListResponse:
    summaries, stats = await UserService(ctx.db).list_with_licenses()
    users = []
    for summary in summaries:
        user, lic = summary.user, summary.license
        users.append(
            UserListItem(
                id=str(user.id),
                email=user.email,
                full_name=user.full_name,
                username=user.username,
                avatar_url=user.avatar_url,
                account_status=user.account_status or "active",
                ora_key=user.ora_key,
                email_confirmed=user.email_confirmed_at is not None,
                created_at=user.created_at,
                last_sign_in_at=user.last_sign_in_at,
                license_id=str(lic.id) if lic else None,
                plan_id=lic.plan_id if lic else None,
                license_key=lic.license_key if lic else None,
                license_status=lic.status if lic else None,
                billing_cycle=lic.billing_cycle if lic else None,
                ai_calls_used=(lic.ai_calls_used or 0) if lic else 0,
                tokens_used=(lic.tokens_used or 0) if lic else 0,
                amount_paid=(lic.amount_paid or 0) if lic else 0,
            )
        )
    return UserListResponse(users=users, stats=UserStats(**stats))


@router.post("/users")
async def create_user(
    payload: UserCreate,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not payload.email or not payload.password:
        raise ValidationError("Email and password are required")

    users = UserService(ctx.db)
    enforcer = PlanEnforcer(ctx.db)

    async def email_available() -> None:
        if await users.get_by_email(payload.email) is not None:
            raise DomainRuleViolation("A user with this email already exists")

    async def plan_assignable() -> None:
        if not payload.plan_id:
            return
        # The membership is written below, so the selected organization counts.
        check = await enforcer.can_assign_plan(
            None, payload.plan_id, payload.organization_id
        )
        if not check.allowed:
            if _requires_organization(check):
                raise _plan_denied(check)
            raise ValidationError(check.reason)

    async def organization_has_room() -> None:
        if not payload.organization_id:
            return
        team = await OrganizationService(ctx.db).get_or_404(payload.organization_id)
        check = await enforcer.can_add_member(team.id)
        if not check.allowed:
            raise DomainRuleViolation(check.reason, details=check.details)

    dependents = []
    if payload.plan_id:

        async def create_license(user: Any) -> Any:
            return await users.create_license(
                user.id,
                payload.plan_id,
                LicenseStatus.ACTIVE.value,
                payload.billing_cycle or BillingCycle.MONTHLY.value,
            )

        dependents.append(DependentStep("create_license", create_license))

    if payload.organization_id:

        async def join_organization(user: Any) -> Any:
            return await TeamMembershipService(ctx.db).admit(
                payload.organization_id, user.id, status=MemberStatus.ACTIVE.value
            )

        dependents.append(DependentStep("add_to_organization", join_organization))

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.CREATE_USER, AuditResourceType.USER
    ).execute(
        mutate=lambda: users.create(
            payload.email,
            payload.password,
            full_name=payload.full_name,
            username=payload.username,
        ),
        validate=[email_available, plan_assignable, organization_has_room],
        dependents=dependents,
        audit=lambda user: AuditRecord(
            str(user.id),
            {
                "email": user.email,
                "full_name": payload.full_name,
                "plan_id": payload.plan_id,
                "organization_id": payload.organization_id,
                "ora_key": user.ora_key,
            },
        ),
    )

    user = outcome.result
    license_step = outcome.step("create_license")
    return {
        "success": True,
        "user": {
            "id": str(user.id),
            "email": user.email,
            "full_name": user.full_name,
            "ora_key": user.ora_key,
        },
        "license": _license(license_step.result if license_step else None),
        "organization_id": payload.organization_id,
        "warnings": outcome.warnings,
    }


@router.patch("/users")
async def update_user(
    payload: UserUpdateRequest,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not payload.user_id:
        raise ValidationError("user_id required")

    users = UserService(ctx.db)
    user = await users.get_or_404(payload.user_id)
    updates = payload.updates.model_dump(mode="json", exclude_unset=True)
    plan_id = updates.get("plan_id")
    license_status = updates.get("license_status")
    billing_cycle = updates.get("billing_cycle")

    async def email_available() -> None:
        email = updates.get("email")
        if not email:
            return
        existing = await users.get_by_email(email)
        if existing is not None and existing.id != user.id:
            raise DomainRuleViolation("A user with this email already exists")

    async def plan_assignable() -> None:
        if not plan_id:
            return
        # Only an existing membership satisfies requires_organization here.
        check = await PlanEnforcer(ctx.db).can_assign_plan(user.id, plan_id)
        if not check.allowed:
            raise _plan_denied(check)

    async def apply_updates() -> dict[str, Any]:
        changes = await users.update_profile(user, updates)
        if plan_id or license_status or billing_cycle:
            assignment = await users.assign_license(
                user.id, plan_id, license_status, billing_cycle
            )
            changes["plan_id"] = plan_id
            if license_status:
                changes["status"] = license_status
            if assignment.created:
                changes["license_created"] = True
            if assignment.replaced:
                changes["license_replaced"] = True
        return changes

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.UPDATE_USER, AuditResourceType.USER
    ).execute(
        mutate=apply_updates,
        validate=[email_available, plan_assignable],
        audit=lambda changes: AuditRecord(str(user.id), changes),
    )
    return {"success": True, "warnings": outcome.warnings}


@router.delete("/users")
async def delete_user(
    user_id: Optional[str] = None,
    ctx: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    if not user_id:
        raise ValidationError("user_id required")

    users = UserService(ctx.db)
    user = await users.get_or_404(user_id)
    resource_id, email = str(user.id), user.email

    async def owns_no_organizations() -> None:
        owned = await users.owned_team_count(user.id)
        if owned:
            raise DomainRuleViolation(
                f"Cannot delete user: they own {owned} organization(s). "
                "Transfer or delete them first."
            )

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.DELETE_USER, AuditResourceType.USER
    ).execute(
        mutate=lambda: users.delete(user),
        validate=[owns_no_organizations],
        audit=lambda _: AuditRecord(resource_id, {"email": email}),
    )
    return {"success": True, "warnings": outcome.warnings}


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


@router.get("/plans")
async def list_plans(ctx: AdminContext = Depends(require_readonly)) -> dict[str, Any]:
    plans = await PlanService(ctx.db).list_all()
    return {"plans": [_plan(p) for p in plans]}


@router.post("/plans")
async def create_plan(
    payload: PlanCreate,
    ctx: AdminContext = Depends(require_superadmin),
) -> dict[str, Any]:
    if not payload.id or not payload.name:
        raise ValidationError("id and name are required")
    if not is_valid_plan_id(payload.id):
        raise ValidationError(
            "Plan ID must be lowercase alphanumeric with optional hyphens"
        )

    plans = PlanService(ctx.db)
    fields = payload.model_dump(exclude={"id", "name"}, exclude_none=True)

    async def id_available() -> None:
        if await PlanEnforcer(ctx.db).get_plan(payload.id) is not None:
            raise DomainRuleViolation(f'Plan with id "{payload.id}" already exists')

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.CREATE_PLAN, AuditResourceType.PLAN
    ).execute(
        mutate=lambda: plans.create(payload.id, payload.name, **fields),
        validate=[id_available],
        audit=lambda plan: AuditRecord(
            plan.id,
            {
                "name": plan.name,
                "price_monthly": plan.price_monthly,
                "price_yearly": plan.price_yearly,
                "max_agents": plan.max_agents,
                "max_devices": plan.max_devices,
                "features": plan.features,
            },
        ),
    )
    return {"success": True, "plan": _plan(outcome.result), "warnings": outcome.warnings}


@router.patch("/plans")
async def update_plan(
    payload: PlanUpdateRequest,
    ctx: AdminContext = Depends(require_superadmin),
) -> dict[str, Any]:
    if not payload.plan_id:
        raise ValidationError("plan_id is required")
    if not payload.updates:
        raise ValidationError("No updates provided")

    safe_updates = {
        k: v for k, v in payload.updates.items() if k in PLAN_UPDATABLE_FIELDS
    }
    if not safe_updates:
        raise ValidationError("No valid fields to update")

    plans = PlanService(ctx.db)
    plan = await plans.get_or_404(payload.plan_id)

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.UPDATE_PLAN, AuditResourceType.PLAN
    ).execute(
        mutate=lambda: plans.update(plan, safe_updates),
        audit=lambda changes: AuditRecord(plan.id, changes),
    )
    return {"success": True, "plan": _plan(plan), "warnings": outcome.warnings}


@router.delete("/plans")
async def delete_plan(
    plan_id: Optional[str] = None,
    ctx: AdminContext = Depends(require_superadmin),
) -> dict[str, Any]:
    if not plan_id:
        raise ValidationError("plan_id is required")

    plans = PlanService(ctx.db)
    plan = await plans.get_or_404(plan_id)

    async def not_in_use() -> None:
        count = await plans.active_license_count(plan.id)
        if count > 0:
            raise DomainRuleViolation(
                f"Cannot delete plan: {count} active license(s) are using it. "
                "Deactivate the plan instead."
            )

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.DELETE_PLAN, AuditResourceType.PLAN
    ).execute(
        mutate=lambda: plans.delete(plan),
        validate=[not_in_use],
        audit=lambda _: AuditRecord(plan_id, {"deleted": True}),
    )
    return {"success": True, "warnings": outcome.warnings}


# ----------------------------------------------------------------------
# Platform settings
# ----------------------------------------------------------------------


@router.get("/settings")
async def list_platform_settings(
    category: Optional[str] = None,
    ctx: AdminContext = Depends(require_superadmin),
) -> dict[str, Any]:
    settings = await PlatformSettingsService(ctx.db).list_settings(category)
    return {"settings": settings}


@router.put("/settings")
async def save_platform_settings(
    payload: SettingsUpdateRequest,
    ctx: AdminContext = Depends(require_superadmin),
) -> dict[str, Any]:
    if not isinstance(payload.settings, list):
        raise ValidationError("settings array is required")

    svc = PlatformSettingsService(ctx.db)
    updated_by = uuid.UUID(ctx.admin_id)

    async def invalidate_billing_caches(results: list[dict[str, str]]) -> None:
        get_settings_resolver().invalidate()
        get_payments_client_factory().invalidate()

    outcome = await AdminMutationPipeline(
        ctx, AuditAction.UPDATE_SETTINGS, AuditResourceType.SETTING
    ).execute(
        mutate=lambda: svc.bulk_upsert(payload.settings, updated_by=updated_by),
        dependents=[DependentStep("invalidate_billing_caches", invalidate_billing_caches)],
        audit=lambda results: AuditRecord(
            None,
            {"keys": [r["key"] for r in results if r["status"] == "saved"]},
        ),
    )
    results = outcome.result
    return {
        "results": results,
        "saved": sum(1 for r in results if r["status"] == "saved"),
        "warnings": outcome.warnings,
    }


# ----------------------------------------------------------------------
# Audit logs
# ----------------------------------------------------------------------


@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    admin_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: AdminContext = Depends(require_readonly),
) -> AuditLogListResponse:
    if admin_id:
        try:
            uuid.UUID(admin_id)
        except ValueError:
            raise ValidationError("Invalid admin_id") from None

    svc = AuditService(ctx.db)
    logs, total = await svc.get_logs(
        AuditLogFilter(
            admin_id=admin_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            start_date=to_utc(start_date),
            end_date=to_utc(end_date),
        ),
        limit=limit,
        offset=offset,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse(**vars(svc.to_entry(log))) for log in logs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/audit-logs/resource/{resource_type}/{resource_id}",
    response_model=list[AuditLogResponse],
)
async def get_resource_audit_history(
    resource_type: str,
    resource_id: str,
    limit: int = Query(50, ge=1, le=200),
    ctx: AdminContext = Depends(require_readonly),
) -> list[AuditLogResponse]:
    """Audit trail of a single resource, newest first."""
    svc = AuditService(ctx.db)
    logs = await svc.get_resource_history(resource_type, resource_id, limit=limit)
    return [AuditLogResponse(**vars(svc.to_entry(log))) for log in logs]
