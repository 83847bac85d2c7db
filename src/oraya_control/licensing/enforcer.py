"""Plan entitlement and quota enforcement.

Every check returns an :class:`EnforcementResult` describing whether the
action is allowed and, when it is not, a human-readable reason. Rule
violations never raise; callers decide which HTTP status a denial maps to.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.models.licensing import (
    EVERYTHING_FEATURE,
    QUOTA_COLUMNS,
    DeviceActivation,
    License,
    LicenseStatus,
    Plan,
    QuotaType,
)
from oraya_control.models.users import (
    SEAT_STATUSES,
    MemberStatus,
    Team,
    TeamMember,
)
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

# Devices allowed to a user without an active plan
NO_PLAN_DEVICE_LIMIT = 1


def is_unlimited(value: int | None) -> bool:
    return value is None or value == -1


@dataclass
class EnforcementResult:
    """Result of a plan or quota check."""

    allowed: bool
    reason: str | None = None
    details: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None
    plan: Plan | None = None


class PlanEnforcer:
    """Plan, seat, device and quota rules backed by the platform database."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> Plan | None:
        return await self.session.get(Plan, plan_id)

    async def get_user_license(self, user_id: uuid.UUID) -> License | None:
        """Most recent active license for the user."""
        result = await self.session.execute(
            select(License)
            .where(
                License.user_id == user_id,
                License.status == LicenseStatus.ACTIVE.value,
            )
            .order_by(License.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_user_plan(self, user_id: uuid.UUID) -> Plan | None:
        license_row = await self.get_user_license(user_id)
        if license_row is None:
            return None
        return await self.get_plan(license_row.plan_id)

    async def get_user_teams(self, user_id: uuid.UUID) -> list[Team]:
        """Active teams where the user holds an active membership."""
        result = await self.session.execute(
            select(Team)
            .join(TeamMember, TeamMember.team_id == Team.id)
            .where(
                TeamMember.user_id == user_id,
                TeamMember.status == MemberStatus.ACTIVE.value,
                Team.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def user_has_organization(self, user_id: uuid.UUID) -> bool:
        return len(await self.get_user_teams(user_id)) > 0

    async def get_team_member_count(self, team_id: uuid.UUID) -> int:
        """Members occupying a seat (active or invited)."""
        result = await self.session.execute(
            select(func.count(TeamMember.id)).where(
                TeamMember.team_id == team_id,
                TeamMember.status.in_(SEAT_STATUSES),
            )
        )
        return int(result.scalar_one() or 0)

    async def get_active_device_count(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(DeviceActivation.id)).where(
                DeviceActivation.user_id == user_id,
                DeviceActivation.is_active.is_(True),
            )
        )
        return int(result.scalar_one() or 0)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def can_assign_plan(
        self,
        user_id: uuid.UUID | None,
        plan_id: str,
        organization_id: uuid.UUID | str | None = None,
    ) -> EnforcementResult:
        """Can ``plan_id`` be assigned to the user?

        An organization being assigned in the same request satisfies the
        ``requires_organization`` rule; pass ``organization_id`` only when the
        caller also writes that membership. ``user_id`` may be None for a user
        that does not exist yet.
        """
        plan = await self.get_plan(plan_id)
        if plan is None:
            return EnforcementResult(False, f'Plan "{plan_id}" does not exist')

        if not plan.is_active:
            return EnforcementResult(False, f'Plan "{plan.name}" is not active')

        if plan.requires_organization and not organization_id:
            has_org = (
                await self.user_has_organization(user_id) if user_id else False
            )
            if not has_org:
                return EnforcementResult(
                    False,
                    f'The "{plan.name}" plan requires organization membership. '
                    "Add the user to an organization first, or select a "
                    "different plan.",
                    details={"requires_organization": True, "plan_name": plan.name},
                    plan=plan,
                )

        return EnforcementResult(True, plan=plan)

    async def can_add_member(self, team_id: uuid.UUID) -> EnforcementResult:
        """Can another member be added to the team?"""
        team = await self.session.get(Team, team_id)
        if team is None:
            return EnforcementResult(False, "Organization not found")

        if not team.is_active:
            return EnforcementResult(
                False, f'Organization "{team.name}" is suspended or inactive'
            )

        if team.max_members is None or team.max_members <= 0:
            return EnforcementResult(True)

        current = await self.get_team_member_count(team.id)
        details = {"current": current, "max": team.max_members}
        if current >= team.max_members:
            return EnforcementResult(
                False,
                f'Organization "{team.name}" has reached its member limit '
                f"({current}/{team.max_members})",
                details=details,
            )
        return EnforcementResult(True, details=details)

    async def can_activate_device(self, user_id: uuid.UUID) -> EnforcementResult:
        plan = await self.get_user_plan(user_id)
        active = await self.get_active_device_count(user_id)

        if plan is None:
            if active >= NO_PLAN_DEVICE_LIMIT:
                return EnforcementResult(
                    False,
                    "No active plan. Free users are limited to 1 device.",
                    details={"current": active, "max": NO_PLAN_DEVICE_LIMIT},
                )
            return EnforcementResult(True)

        if is_unlimited(plan.max_devices):
            return EnforcementResult(True, plan=plan)

        details = {"current": active, "max": plan.max_devices}
        if active >= plan.max_devices:
            return EnforcementResult(
                False,
                f'Device limit reached: your "{plan.name}" plan allows '
                f"{plan.max_devices} device(s). You have {active} active.",
                details=details,
                plan=plan,
            )
        return EnforcementResult(True, details=details, plan=plan)

    async def get_remaining_quota(
        self, user_id: uuid.UUID, quota_type: QuotaType | str
    ) -> EnforcementResult:
        """Usage, limit and remaining for a monthly quota.

        Unlimited quotas report ``limit`` -1 and ``remaining`` None.
        """
        quota = QuotaType(quota_type)
        license_row = await self.get_user_license(user_id)
        if license_row is None:
            return EnforcementResult(False, "No active license")

        plan = await self.get_plan(license_row.plan_id)
        if plan is None:
            return EnforcementResult(False, "Plan not found")

        usage_column, limit_column = QUOTA_COLUMNS[quota]
        used = getattr(license_row, usage_column) or 0
        limit = getattr(plan, limit_column)

        if is_unlimited(limit):
            return EnforcementResult(
                True, usage={"used": used, "limit": -1, "remaining": None}, plan=plan
            )

        remaining = max(0, limit - used)
        if remaining <= 0:
            return EnforcementResult(
                False,
                f'{quota.value.replace("_", " ")} quota exhausted for your '
                f'"{plan.name}" plan ({used}/{limit})',
                usage={"used": used, "limit": limit, "remaining": 0},
                plan=plan,
            )
        return EnforcementResult(
            True, usage={"used": used, "limit": limit, "remaining": remaining}, plan=plan
        )

    async def enforce_access(
        self,
        user_id: uuid.UUID,
        feature_key: str,
        quota_type: QuotaType | str | None = None,
    ) -> EnforcementResult:
        """Feature check plus optional quota check in one call.

        Every plan-gated endpoint calls this before doing work.
        """
        plan = await self.get_user_plan(user_id)
        if plan is None:
            return EnforcementResult(
                False,
                f'No active plan. Feature "{feature_key}" requires a subscription.',
            )

        if not plan.includes_feature(feature_key):
            return EnforcementResult(
                False,
                f'Feature "{feature_key}" is not included in your "{plan.name}" '
                "plan. Upgrade to access this feature.",
                details={
                    "plan_name": plan.name,
                    "available_features": list(plan.features or []),
                },
                plan=plan,
            )

        if quota_type is None:
            return EnforcementResult(True, plan=plan)

        quota = await self.get_remaining_quota(user_id, quota_type)
        return EnforcementResult(
            quota.allowed, quota.reason, usage=quota.usage, plan=plan
        )

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    async def increment_usage(
        self, user_id: uuid.UUID, quota_type: QuotaType | str, amount: int = 1
    ) -> bool:
        """Bump a usage counter on the user's active license.

        Call after the operation succeeded. Returns False when the user has
        no active license.
        """
        quota = QuotaType(quota_type)
        license_row = await self.get_user_license(user_id)
        if license_row is None:
            return False

        usage_column, limit_column = QUOTA_COLUMNS[quota]
        column = getattr(License, usage_column)
        result = await self.session.execute(
            update(License)
            .where(License.id == license_row.id)
            .values({column: column + amount, License.updated_at: utc_now()})
            .returning(column)
        )
        new_value = result.scalar_one()

        plan = await self.get_plan(license_row.plan_id)
        limit = getattr(plan, limit_column) if plan is not None else None
        if not is_unlimited(limit) and new_value >= limit:
            await self.session.execute(
                update(License)
                .where(License.id == license_row.id)
                .values(usage_limit_reached=True)
            )
            logger.info(
                "License %s reached its %s limit (%s/%s)",
                license_row.id,
                quota.value,
                new_value,
                limit,
            )
        await self.session.refresh(license_row)
        return True

    async def reset_monthly_usage(self, license_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            update(License)
            .where(License.id == license_id)
            .values(
                ai_calls_used=0,
                tokens_used=0,
                conversations_created=0,
                usage_limit_reached=False,
                current_period_start=utc_now(),
                updated_at=utc_now(),
            )
        )
        return result.rowcount > 0
