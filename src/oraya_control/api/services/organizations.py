from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, DateTime, delete, func, insert, literal, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import DomainRuleViolation, NotFoundError
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.db import is_unique_violation
from oraya_control.licensing.enforcer import PlanEnforcer
from oraya_control.models.base import GUID
from oraya_control.models.licensing import License, LicenseStatus
from oraya_control.models.users import (
    SEAT_STATUSES,
    MemberRole,
    MemberStatus,
    Team,
    TeamMember,
    User,
)
from oraya_control.utils.datetime import isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_MEMBERS = 5
DEFAULT_MAX_AGENTS = 10
DEFAULT_SUSPENSION_REASON = "Suspended by admin"

# Fields an admin may set directly on a team
UPDATABLE_FIELDS = ("name", "description", "plan_id", "max_members", "max_agents")


def normalize_slug(slug: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", slug.strip().lower())


def is_valid_slug(slug: str) -> bool:
    """A normalized slug needs at least one letter or digit."""
    return re.search(r"[a-z0-9]", slug) is not None


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


@dataclass
class OrganizationSummary:
    team: Team
    owner: User | None
    member_count: int


class OrganizationService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, org_id: uuid.UUID | str) -> Team | None:
        try:
            return await self.session.get(Team, _as_uuid(org_id))
        except ValueError:
            return None

    async def get_or_404(self, org_id: uuid.UUID | str) -> Team:
        team = await self.get_by_id(org_id)
        if team is None:
            raise NotFoundError("Organization not found")
        return team

    async def get_by_slug(self, slug: str) -> Team | None:
        stmt = select(Team).where(Team.slug == normalize_slug(slug))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_with_stats(self) -> tuple[list[OrganizationSummary], dict[str, Any]]:
        """All teams, newest first, with owner and seat counts plus panel stats."""
        teams = list(
            (
                await self.session.execute(
                    select(Team).order_by(Team.created_at.desc())
                )
            )
            .scalars()
            .all()
        )

        counts_result = await self.session.execute(
            select(TeamMember.team_id, func.count(TeamMember.id))
            .where(TeamMember.status.in_(SEAT_STATUSES))
            .group_by(TeamMember.team_id)
        )
        counts = {team_id: count for team_id, count in counts_result.all()}

        owner_ids = {team.owner_id for team in teams}
        owners: dict[uuid.UUID, User] = {}
        revenue = 0.0
        if owner_ids:
            owner_result = await self.session.execute(
                select(User).where(User.id.in_(owner_ids))
            )
            owners = {user.id: user for user in owner_result.scalars().all()}

            revenue_result = await self.session.execute(
                select(func.coalesce(func.sum(License.amount_paid), 0)).where(
                    License.user_id.in_(owner_ids),
                    License.status == LicenseStatus.ACTIVE.value,
                )
            )
            revenue = float(revenue_result.scalar_one() or 0)

        summaries = [
            OrganizationSummary(
                team=team,
                owner=owners.get(team.owner_id),
                member_count=int(counts.get(team.id, 0)),
            )
            for team in teams
        ]
        stats = {
            "total": len(teams),
            "active": sum(1 for team in teams if team.is_active),
            "revenue": revenue,
            "growth": 0,
        }
        return summaries, stats

    async def create(
        self,
        name: str,
        slug: str,
        owner_id: uuid.UUID | str,
        description: str | None = None,
        plan_id: str | None = None,
        max_members: int | None = None,
        max_agents: int | None = None,
    ) -> Team:
        """Insert a team. A slug collision raises a 409."""
        team = Team(
            id=uuid.uuid4(),
            name=name,
            slug=normalize_slug(slug),
            description=description or None,
            owner_id=_as_uuid(owner_id),
            plan_id=plan_id or None,
            max_members=max_members or DEFAULT_MAX_MEMBERS,
            max_agents=max_agents or DEFAULT_MAX_AGENTS,
            is_active=True,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(team)
                await self.session.flush()
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DomainRuleViolation("Slug already taken") from exc
            raise

        logger.info(
            "Created organization %s (%s)", team.id, sanitize_for_log(team.slug)
        )
        return team

    async def update(self, team: Team, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply admin updates and return the changes that were written.

        ``suspend`` True sets the suspension fields and deactivates the team;
        ``suspend`` False clears them and reactivates it.
        """
        changes: dict[str, Any] = {}
        for field_name in UPDATABLE_FIELDS:
            if field_name in updates:
                changes[field_name] = updates[field_name]

        suspend = updates.get("suspend")
        if suspend is True:
            changes["suspended_at"] = utc_now()
            changes["suspension_reason"] = (
                updates.get("suspension_reason") or DEFAULT_SUSPENSION_REASON
            )
            changes["is_active"] = False
        elif suspend is False:
            changes["suspended_at"] = None
            changes["suspension_reason"] = None
            changes["is_active"] = True

        for field_name, value in changes.items():
            setattr(team, field_name, value)
        team.updated_at = utc_now()
        await self.session.flush()

        return {
            key: isoformat_or_none(value) if key == "suspended_at" else value
            for key, value in changes.items()
        }

    async def delete(self, team: Team) -> None:
        await self.session.execute(
            delete(TeamMember).where(TeamMember.team_id == team.id)
        )
        await self.session.delete(team)
        await self.session.flush()
        logger.info("Deleted organization %s", team.id)


class TeamMembershipService:
    """Seat-limited team membership."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def admit(
        self,
        team_id: uuid.UUID | str,
        user_id: uuid.UUID | str,
        role: str = MemberRole.MEMBER.value,
        status: str = MemberStatus.ACTIVE.value,
        can_manage_members: bool = False,
        can_manage_billing: bool = False,
    ) -> TeamMember:
        """Add a member with a single conditional insert.

        The row is written only if the team is active and its live seat count
        is below ``max_members`` (null or <= 0 means unlimited). When nothing
        is inserted the enforcer explains why and a 409 is raised.
        """
        team_id = _as_uuid(team_id)
        user_id = _as_uuid(user_id)
        member_id = uuid.uuid4()
        now = utc_now()

        seat_count = (
            select(func.count(TeamMember.id))
            .where(
                TeamMember.team_id == team_id,
                TeamMember.status.in_(SEAT_STATUSES),
            )
            .correlate(None)
            .scalar_subquery()
        )
        has_room = (
            select(Team.id)
            .where(
                Team.id == team_id,
                Team.is_active.is_(True),
                or_(
                    Team.max_members.is_(None),
                    Team.max_members <= 0,
                    Team.max_members > seat_count,
                ),
            )
            .correlate(None)
            .exists()
        )
        table = TeamMember.__table__
        source = select(
            literal(member_id, type_=GUID()),
            literal(team_id, type_=GUID()),
            literal(user_id, type_=GUID()),
            literal(role),
            literal(status),
            literal(can_manage_members, type_=Boolean()),
            literal(can_manage_billing, type_=Boolean()),
            literal(now, type_=DateTime(timezone=True)),
            literal(now, type_=DateTime(timezone=True)),
        ).where(has_room)
        stmt = insert(table).from_select(
            [
                table.c.id,
                table.c.team_id,
                table.c.user_id,
                table.c.role,
                table.c.status,
                table.c.can_manage_members,
                table.c.can_manage_billing,
                table.c.joined_at,
                table.c.created_at,
            ],
            source,
        )

        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DomainRuleViolation(
                    "User is already a member of this organization"
                ) from exc
            raise

        if result.rowcount != 1:
            check = await PlanEnforcer(self.session).can_add_member(team_id)
            if check.reason == "Organization not found":
                raise NotFoundError(check.reason)
            raise DomainRuleViolation(
                check.reason or "Organization cannot accept new members",
                details=check.details,
            )

        member = await self.session.get(TeamMember, member_id)
        logger.info("Admitted user %s to team %s as %s", user_id, team_id, role)
        return member

    async def add_owner(self, team: Team) -> TeamMember:
        return await self.admit(
            team.id,
            team.owner_id,
            role=MemberRole.OWNER.value,
            status=MemberStatus.ACTIVE.value,
            can_manage_members=True,
            can_manage_billing=True,
        )
