from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import DomainRuleViolation, NotFoundError
from oraya_control.db import is_unique_violation
from oraya_control.models.licensing import License, LicenseStatus, Plan
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

PLAN_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

# Fields an admin may change on an existing plan
UPDATABLE_FIELDS = (
    "name",
    "description",
    "price_monthly",
    "price_yearly",
    "currency",
    "max_agents",
    "max_conversations_per_month",
    "max_ai_calls_per_month",
    "max_token_usage_per_month",
    "max_devices",
    "features",
    "is_active",
    "is_public",
    "display_order",
    "badge",
    "requires_organization",
)

# Defaults applied to fields omitted on create
CREATE_DEFAULTS: dict[str, Any] = {
    "price_monthly": 0,
    "price_yearly": 0,
    "currency": "usd",
    "max_agents": 1,
    "max_conversations_per_month": 50,
    "max_ai_calls_per_month": 1000,
    "max_token_usage_per_month": 100000,
    "max_devices": 1,
    "features": [],
    "is_active": True,
    "is_public": True,
    "display_order": 0,
    "requires_organization": False,
}


def is_valid_plan_id(plan_id: str) -> bool:
    return bool(PLAN_ID_PATTERN.match(plan_id))


class PlanService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_all(self) -> list[Plan]:
        result = await self.session.execute(
            select(Plan).order_by(Plan.display_order.asc(), Plan.id.asc())
        )
        return list(result.scalars().all())

    async def get_or_404(self, plan_id: str) -> Plan:
        plan = await self.session.get(Plan, plan_id)
        if plan is None:
            raise NotFoundError(f'Plan "{plan_id}" not found')
        return plan

    async def create(self, plan_id: str, name: str, **fields: Any) -> Plan:
        values = dict(CREATE_DEFAULTS)
        values.update(
            {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
        )
        plan = Plan(id=plan_id, name=name, **values)
        try:
            async with self.session.begin_nested():
                self.session.add(plan)
                await self.session.flush()
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DomainRuleViolation(
                    f'Plan with id "{plan_id}" already exists'
                ) from exc
            raise
        logger.info("Created plan %s", plan_id)
        return plan

    async def update(self, plan: Plan, updates: dict[str, Any]) -> dict[str, Any]:
        changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        for field_name, value in changes.items():
            setattr(plan, field_name, value)
        plan.updated_at = utc_now()
        await self.session.flush()
        return changes

    async def active_license_count(self, plan_id: str) -> int:
        result = await self.session.execute(
            select(func.count(License.id)).where(
                License.plan_id == plan_id,
                License.status == LicenseStatus.ACTIVE.value,
            )
        )
        return int(result.scalar_one() or 0)

    async def delete(self, plan: Plan) -> None:
        await self.session.delete(plan)
        await self.session.flush()
        logger.info("Deleted plan %s", plan.id)
