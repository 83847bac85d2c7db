"""Admin audit log model.

Every superadmin mutation of organizations, users, plans and settings writes
one row here. Rows are append-only.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Index, Text

from oraya_control.models.base import Base, GUID


class AuditAction(str, Enum):
    """Audit action names written by the superadmin panel."""

    # Organizations
    CREATE_ORGANIZATION = "create_organization"
    UPDATE_ORGANIZATION = "update_organization"
    DELETE_ORGANIZATION = "delete_organization"
    ADD_MEMBER = "add_member"

    # Users
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"

    # Plans
    CREATE_PLAN = "create_plan"
    UPDATE_PLAN = "update_plan"
    DELETE_PLAN = "delete_plan"

    # Settings
    UPDATE_SETTINGS = "update_settings"

    # Panel sessions
    LOGIN = "auth.login"


class AuditResourceType(str, Enum):
    TEAM = "team"
    USER = "user"
    PLAN = "plan"
    SETTING = "setting"
    PLATFORM_ADMIN = "platform_admin"


class AdminAuditLog(Base):
    """Audit log entry for a superadmin action.

    Records who did what to which resource, with the submitted changes and
    request context. No updated_at: entries are immutable.

    Example usage:
        entry = AdminAuditLog(
            admin_id=admin.id,
            admin_email=admin.email,
            action=AuditAction.CREATE_ORGANIZATION.value,
            resource_type=AuditResourceType.TEAM.value,
            resource_id=str(team.id),
            changes={"name": "Acme", "slug": "acme"},
            ip_address="1.2.3.4",
        )
    """

    __tablename__ = "admin_audit_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)

    # Who performed the action
    admin_id = Column(GUID(), nullable=True, index=True)
    admin_email = Column(Text, nullable=True)

    # What was done
    action = Column(Text, nullable=False, index=True)
    resource_type = Column(Text, nullable=False)
    resource_id = Column(Text, nullable=True)

    # Context
    changes = Column(JSON, nullable=True, default=dict)
    request_metadata = Column(JSON, nullable=True, default=dict)
    ip_address = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    __table_args__ = (
        Index("ix_admin_audit_logs_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return f"<AdminAuditLog {self.action} {self.resource_type}:{self.resource_id}>"
