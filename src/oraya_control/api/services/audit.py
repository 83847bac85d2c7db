from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import and_, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.utils.logging import redact_sensitive
from oraya_control.models.audit import (
    AdminAuditLog,
    AuditAction,
    AuditResourceType,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditLogEntry:
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


@dataclass
class AuditLogFilter:
    admin_id: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        action: AuditAction | str,
        resource_type: AuditResourceType | str,
        resource_id: Optional[str],
        admin_id: Optional[uuid.UUID | str] = None,
        admin_email: Optional[str] = None,
        changes: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        extra_metadata: Optional[dict[str, Any]] = None,
    ) -> AdminAuditLog:
        action_str = action.value if isinstance(action, AuditAction) else action
        resource_type_str = (
            resource_type.value
            if isinstance(resource_type, AuditResourceType)
            else resource_type
        )

        req_metadata: dict[str, Any] = {}
        if user_agent:
            req_metadata["user_agent"] = user_agent
        if extra_metadata:
            req_metadata.update(extra_metadata)

        audit_log = AdminAuditLog(
            admin_id=uuid.UUID(str(admin_id)) if admin_id else None,
            admin_email=admin_email,
            action=action_str,
            resource_type=resource_type_str,
            resource_id=resource_id,
            changes=redact_sensitive(changes) if changes else None,
            request_metadata=req_metadata if req_metadata else None,
            ip_address=ip_address,
        )

        self.session.add(audit_log)
        await self.session.flush()

        logger.debug(
            "Audit log created: %s %s:%s by admin=%s",
            action_str,
            resource_type_str,
            resource_id,
            admin_id,
        )

        return audit_log

    async def get_logs(
        self,
        filters: Optional[AuditLogFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[AdminAuditLog], int]:
        conditions = []

        if filters:
            if filters.admin_id:
                conditions.append(AdminAuditLog.admin_id == uuid.UUID(filters.admin_id))
            if filters.action:
                conditions.append(AdminAuditLog.action == filters.action)
            if filters.resource_type:
                conditions.append(AdminAuditLog.resource_type == filters.resource_type)
            if filters.resource_id:
                conditions.append(AdminAuditLog.resource_id == filters.resource_id)
            if filters.start_date:
                conditions.append(AdminAuditLog.created_at >= filters.start_date)
            if filters.end_date:
                conditions.append(AdminAuditLog.created_at <= filters.end_date)

        where = and_(*conditions) if conditions else True

        count_result = await self.session.execute(
            select(func.count(AdminAuditLog.id)).where(where)
        )
        total = int(count_result.scalar_one() or 0)

        stmt = (
            select(AdminAuditLog)
            .where(where)
            .order_by(desc(AdminAuditLog.created_at))
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        logs = result.scalars().all()

        return logs, total

    async def get_resource_history(
        self,
        resource_type: str,
        resource_id: str,
        limit: int = 50,
    ) -> Sequence[AdminAuditLog]:
        stmt = (
            select(AdminAuditLog)
            .where(
                and_(
                    AdminAuditLog.resource_type == resource_type,
                    AdminAuditLog.resource_id == resource_id,
                )
            )
            .order_by(desc(AdminAuditLog.created_at))
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    @staticmethod
    def to_entry(log: AdminAuditLog) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(log.id),
            admin_id=str(log.admin_id) if log.admin_id else None,
            admin_email=log.admin_email,
            action=str(log.action),
            resource_type=str(log.resource_type),
            resource_id=str(log.resource_id) if log.resource_id else None,
            changes=log.changes,
            request_metadata=log.request_metadata,
            ip_address=log.ip_address,
            created_at=log.created_at,
        )
