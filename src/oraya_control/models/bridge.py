"""Bridge models: API keys and research jobs synchronised with desktop clients."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
)

from oraya_control.models.base import Base, GUID


class ResearchJobStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class ApiKey(Base):
    """Bridge API key (``ora_...``) issued to a user.

    Scopes default to ``["read"]``; ``admin`` satisfies any scope.
    """

    __tablename__ = "api_keys"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    key = Column(Text, nullable=False, unique=True, index=True)
    name = Column(Text, nullable=True)
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scopes = Column(JSON, default=lambda: ["read"], nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    request_count = Column(Integer, default=0, nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class ResearchJob(Base):
    """A scheduled research job owned by a user."""

    __tablename__ = "research_jobs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(Text, nullable=False)
    query = Column(Text, nullable=False)
    schedule = Column(Text, default="daily", nullable=False)
    sources = Column(JSON, default=lambda: ["web"], nullable=False)
    config = Column(JSON, default=dict, nullable=False)
    status = Column(Text, default=ResearchJobStatus.RUNNING.value, nullable=False)
    device_id = Column(Text, nullable=True)
    findings_count = Column(Integer, default=0, nullable=False)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
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


class ResearchFinding(Base):
    """A finding reported by a research job."""

    __tablename__ = "research_findings"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    job_id = Column(
        GUID(),
        ForeignKey("research_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(GUID(), nullable=False, index=True)
    title = Column(Text, nullable=False)
    summary = Column(Text, default="", nullable=False)
    source_url = Column(Text, nullable=True)
    relevance_score = Column(Float, default=0.5, nullable=False)
    raw_data = Column(JSON, default=dict, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    device_id = Column(Text, nullable=True)
    discovered_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_research_findings_job_discovered", "job_id", "discovered_at"),
    )
