from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import DomainRuleViolation, NotFoundError
from oraya_control.api.services.auth import hash_password
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.db import is_unique_violation
from oraya_control.models.bridge import ApiKey
from oraya_control.models.licensing import (
    BillingCycle,
    DeviceActivation,
    License,
    LicenseStatus,
)
from oraya_control.models.users import AccountStatus, Team, TeamMember, User
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PLAN_ID = "free"


@dataclass
class UserSummary:
    user: User
    license: License | None


@dataclass
class LicenseAssignment:
    license: License
    created: bool = False
    replaced: bool = False


class UserService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: uuid.UUID | str) -> User | None:
        try:
            key = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
        except ValueError:
            return None
        return await self.session.get(User, key)

    async def get_or_404(self, user_id: uuid.UUID | str) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_license(self, user_id: uuid.UUID) -> License | None:
        result = await self.session.execute(
            select(License)
            .where(License.user_id == user_id)
            .order_by(License.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_with_licenses(self) -> tuple[list[UserSummary], dict[str, int]]:
        """Users with their most recent license, plus panel stats."""
        users = list(
            (await self.session.execute(select(User).order_by(User.created_at.desc())))
            .scalars()
            .all()
        )
        licenses = list(
            (
                await self.session.execute(
                    select(License).order_by(License.created_at.desc())
                )
            )
            .scalars()
            .all()
        )

        latest: dict[uuid.UUID, License] = {}
        for license_row in licenses:
            latest.setdefault(license_row.user_id, license_row)

        stats = {
            "total": len(users),
            "active": sum(
                1 for lic in licenses if lic.status == LicenseStatus.ACTIVE.value
            ),
            "trial": sum(1 for lic in licenses if lic.is_trial),
            "churned": sum(
                1 for lic in licenses if lic.status == LicenseStatus.CANCELLED.value
            ),
        }
        return [UserSummary(user, latest.get(user.id)) for user in users], stats

    async def create(
        self,
        email: str,
        password: str,
        full_name: str | None = None,
        username: str | None = None,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email.strip().lower(),
            password_hash=hash_password(password),
            full_name=full_name or None,
            username=username or None,
            account_status=AccountStatus.ACTIVE.value,
            email_confirmed_at=utc_now(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(user)
                await self.session.flush()
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DomainRuleViolation(
                    "A user with this email already exists"
                ) from exc
            raise
        logger.info("Created user %s", user.id)
        return user

    async def update_profile(self, user: User, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply email, password and profile updates; return audited changes."""
        changes: dict[str, Any] = {}
        if updates.get("email"):
            user.email = updates["email"].strip().lower()
            changes["email"] = user.email
        if updates.get("password"):
            user.password_hash = hash_password(updates["password"])
            changes["password_changed"] = True
        for field_name in ("full_name", "username"):
            if field_name in updates:
                setattr(user, field_name, updates[field_name])
                changes[field_name] = updates[field_name]
        if changes:
            user.updated_at = utc_now()
            await self.session.flush()
        return changes

    async def create_license(
        self,
        user_id: uuid.UUID,
        plan_id: str | None,
        status: str | None = None,
        billing_cycle: str | None = None,
    ) -> License:
        license_row = License(
            id=uuid.uuid4(),
            user_id=user_id,
            plan_id=plan_id or DEFAULT_PLAN_ID,
            status=status or LicenseStatus.ACTIVE.value,
            billing_cycle=billing_cycle or BillingCycle.MONTHLY.value,
            activated_at=utc_now(),
        )
        self.session.add(license_row)
        await self.session.flush()
        return license_row

    async def assign_license(
        self,
        user_id: uuid.UUID,
        plan_id: str | None = None,
        status: str | None = None,
        billing_cycle: str | None = None,
    ) -> LicenseAssignment:
        """Move the user's most recent license to new values.

        The update runs in a savepoint. If it collides with another of the
        user's licenses on (user_id, plan_id), every license row of the user is
        deleted and one fresh row with the merged values is inserted, so the
        user ends up with exactly one license.
        """
        current = await self.latest_license(user_id)
        if current is None:
            created = await self.create_license(user_id, plan_id, status, billing_cycle)
            return LicenseAssignment(created, created=True)

        previous_plan = current.plan_id
        previous_status = current.status
        previous_cycle = current.billing_cycle

        try:
            async with self.session.begin_nested():
                if plan_id:
                    current.plan_id = plan_id
                if status:
                    current.status = status
                if billing_cycle:
                    current.billing_cycle = billing_cycle
                current.updated_at = utc_now()
                await self.session.flush()
            return LicenseAssignment(current)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            logger.warning(
                "License update for user %s conflicts with an existing row, "
                "replacing licenses: %s",
                user_id,
                sanitize_for_log(str(exc.orig)),
            )

        await self.session.execute(
            delete(License)
            .where(License.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        self.session.expunge(current)
        replacement = await self.create_license(
            user_id,
            plan_id or previous_plan,
            status or previous_status or LicenseStatus.ACTIVE.value,
            billing_cycle or previous_cycle or BillingCycle.MONTHLY.value,
        )
        return LicenseAssignment(replacement, replaced=True)

    async def owned_team_count(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(Team.id)).where(Team.owner_id == user_id)
        )
        return int(result.scalar_one() or 0)

    async def delete(self, user: User) -> None:
        """Delete a user and the rows that belong to them."""
        for model in (TeamMember, License, DeviceActivation, ApiKey):
            await self.session.execute(delete(model).where(model.user_id == user.id))
        await self.session.delete(user)
        await self.session.flush()
        logger.info("Deleted user %s", user.id)
