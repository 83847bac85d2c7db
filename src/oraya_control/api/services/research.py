from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import NotFoundError
from oraya_control.models.bridge import ResearchFinding, ResearchJob, ResearchJobStatus
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "daily"
DEFAULT_SOURCES = ("web",)
DEFAULT_RELEVANCE = 0.5
SYNC_FINDINGS_LIMIT = 200


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class ResearchService:
    """Research jobs and findings, always scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: uuid.UUID | str):
        self.session = session
        self.user_id = _as_uuid(user_id)

    async def list_jobs(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[ResearchJob]:
        stmt = (
            select(ResearchJob)
            .where(ResearchJob.user_id == self.user_id)
            .order_by(ResearchJob.created_at.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(ResearchJob.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_job(self, job_id: uuid.UUID | str) -> ResearchJob | None:
        key = _as_uuid(job_id)
        if key is None:
            return None
        result = await self.session.execute(
            select(ResearchJob).where(
                ResearchJob.id == key, ResearchJob.user_id == self.user_id
            )
        )
        return result.scalar_one_or_none()

    async def get_job_or_404(self, job_id: uuid.UUID | str) -> ResearchJob:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError("Research job not found")
        return job

    async def findings(
        self,
        job_id: uuid.UUID,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[ResearchFinding]:
        """Newest findings of a job, optionally only those after ``since``."""
        stmt = (
            select(ResearchFinding)
            .where(ResearchFinding.job_id == job_id)
            .order_by(ResearchFinding.discovered_at.desc())
            .limit(limit)
        )
        if since is not None:
            stmt = stmt.where(ResearchFinding.discovered_at > since)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_findings(self, job_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(ResearchFinding.id)).where(
                ResearchFinding.job_id == job_id
            )
        )
        return int(result.scalar_one() or 0)

    async def new_findings_since(
        self,
        job_ids: Sequence[uuid.UUID],
        since: datetime,
        limit: int = SYNC_FINDINGS_LIMIT,
    ) -> list[ResearchFinding]:
        """Findings across ``job_ids`` discovered after ``since``, for sync."""
        if not job_ids:
            return []
        result = await self.session.execute(
            select(ResearchFinding)
            .where(
                ResearchFinding.job_id.in_(list(job_ids)),
                ResearchFinding.discovered_at > since,
            )
            .order_by(ResearchFinding.discovered_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def create_job(
        self,
        name: str,
        query: str,
        schedule: Optional[str] = None,
        sources: Optional[list[str]] = None,
        config: Optional[dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> ResearchJob:
        job = ResearchJob(
            id=uuid.uuid4(),
            user_id=self.user_id,
            name=name,
            query=query,
            schedule=schedule or DEFAULT_SCHEDULE,
            sources=sources or list(DEFAULT_SOURCES),
            config=config or {},
            status=ResearchJobStatus.RUNNING.value,
            device_id=device_id,
        )
        self.session.add(job)
        await self.session.flush()
        logger.info("Created research job %s for user %s", job.id, self.user_id)
        return job

    async def set_status(
        self, job_id: uuid.UUID | str, status: ResearchJobStatus | str
    ) -> str:
        value = ResearchJobStatus(status).value
        job = await self.get_job_or_404(job_id)
        await self.session.execute(
            update(ResearchJob)
            .where(ResearchJob.id == job.id, ResearchJob.user_id == self.user_id)
            .values(status=value, updated_at=utc_now())
        )
        return value

    async def delete_job(self, job_id: uuid.UUID | str) -> None:
        job = await self.get_job_or_404(job_id)
        await self.session.execute(
            delete(ResearchFinding).where(ResearchFinding.job_id == job.id)
        )
        await self.session.delete(job)
        await self.session.flush()
        logger.info("Deleted research job %s", job.id)

    async def submit_finding(
        self,
        job_id: uuid.UUID | str,
        title: str,
        summary: Optional[str] = None,
        source_url: Optional[str] = None,
        relevance_score: Optional[float] = None,
        raw_data: Optional[dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> ResearchFinding:
        """Store a finding pushed by a desktop client and bump the job's count."""
        job = await self.get_job_or_404(job_id)
        finding = ResearchFinding(
            id=uuid.uuid4(),
            job_id=job.id,
            user_id=self.user_id,
            title=title,
            summary=summary or "",
            source_url=source_url or None,
            relevance_score=relevance_score or DEFAULT_RELEVANCE,
            raw_data=raw_data or {},
            discovered_at=utc_now(),
            device_id=device_id,
        )
        self.session.add(finding)
        await self.session.execute(
            update(ResearchJob)
            .where(ResearchJob.id == job.id)
            .values(
                findings_count=ResearchJob.findings_count + 1,
                last_run_at=finding.discovered_at,
            )
        )
        await self.session.flush()
        return finding
