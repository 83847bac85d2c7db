"""User, Team, TeamMember and PlatformAdmin models.

This module defines the tenancy models of the control plane:
- User: Individual accounts (desktop app and web dashboard)
- Team: Organizations that users can belong to, with seat limits
- TeamMember: User-Team relationships with roles and permissions
- PlatformAdmin: Superadmin panel operators, separate from end users
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)

from oraya_control.models.base import Base, GUID


def generate_ora_key() -> str:
    return "ora_" + secrets.token_hex(16)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class MemberRole(str, Enum):
    """Roles for team membership."""

    OWNER = "owner"  # Full control, can delete the team
    ADMIN = "admin"  # Can manage members
    MEMBER = "member"  # Standard access


class MemberStatus(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"  # Holds a seat until accepted or removed
    REMOVED = "removed"


# Statuses that occupy a seat against Team.max_members
SEAT_STATUSES = (MemberStatus.ACTIVE.value, MemberStatus.INVITED.value)


class AdminRole(str, Enum):
    """Superadmin panel roles, highest first."""

    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    SUPPORT = "support"
    READONLY = "readonly"


ADMIN_ROLE_LEVELS = {
    AdminRole.SUPERADMIN.value: 4,
    AdminRole.ADMIN.value: 3,
    AdminRole.SUPPORT.value: 2,
    AdminRole.READONLY.value: 1,
}


class User(Base):
    """End-user account.

    ``ora_key`` is generated on insert and is the user's personal bridge key.
    """

    __tablename__ = "users"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True, index=True)
    password_hash = Column(Text, nullable=True)
    full_name = Column(Text, nullable=True)
    username = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    account_status = Column(
        Text, default=AccountStatus.ACTIVE.value, nullable=False
    )
    ora_key = Column(Text, nullable=False, unique=True, default=generate_ora_key)

    email_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    last_sign_in_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Team(Base):
    """Organization (tenant) model.

    A team is suspended when ``suspended_at`` is set; suspension also clears
    ``is_active``. ``max_members`` of null or <= 0 means unlimited seats.
    """

    __tablename__ = "teams"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(Text, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    owner_id = Column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Text, ForeignKey("plans.id"), nullable=True)

    max_members = Column(Integer, default=5, nullable=True)
    max_agents = Column(Integer, default=10, nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def status(self) -> str:
        if self.suspended_at is not None:
            return "suspended"
        return "active" if self.is_active else "inactive"

    def __repr__(self) -> str:
        return f"<Team {self.slug}>"


class TeamMember(Base):
    """User membership in a team."""

    __tablename__ = "team_members"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    team_id = Column(
        GUID(),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(Text, default=MemberRole.MEMBER.value, nullable=False)
    status = Column(Text, default=MemberStatus.ACTIVE.value, nullable=False)
    can_manage_members = Column(Boolean, default=False, nullable=False)
    can_manage_billing = Column(Boolean, default=False, nullable=False)

    joined_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_member"),)

    def __repr__(self) -> str:
        return f"<TeamMember team={self.team_id} user={self.user_id} {self.role}>"


class PlatformAdmin(Base):
    """Superadmin panel account.

    Locked for 15 minutes after five consecutive failed logins.
    """

    __tablename__ = "platform_admins"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True, index=True)
    password_hash = Column(Text, nullable=False)
    full_name = Column(Text, nullable=True)
    role = Column(Text, default=AdminRole.READONLY.value, nullable=False)
    permissions = Column(JSON, default=dict, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PlatformAdmin {self.email} ({self.role})>"
