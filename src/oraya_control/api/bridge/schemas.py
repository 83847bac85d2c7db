from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

RESEARCH_ACTIONS = ("create", "pause", "resume", "delete", "submit_finding")


class ResearchJobResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    query: str
    schedule: str
    sources: list[str]
    config: dict[str, Any]
    status: str
    device_id: Optional[str]
    findings_count: int
    last_run_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ResearchFindingResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    title: str
    summary: str
    source_url: Optional[str]
    relevance_score: float
    raw_data: dict[str, Any]
    is_read: bool
    device_id: Optional[str]
    discovered_at: datetime

    class Config:
        from_attributes = True


class ResearchActionRequest(BaseModel):
    """Body of ``POST /api/v1/research``; which fields matter depends on ``action``."""

    action: Optional[str] = None
    job_id: Optional[str] = None

    # create
    name: Optional[str] = None
    query: Optional[str] = None
    schedule: Optional[str] = None
    sources: Optional[list[str]] = None
    config: Optional[dict[str, Any]] = None

    # submit_finding
    title: Optional[str] = None
    summary: Optional[str] = None
    source_url: Optional[str] = None
    relevance_score: Optional[float] = None
    raw_data: Optional[dict[str, Any]] = None
