"""Bridge research API: desktop and cloud sync of 24/7 research jobs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.admin.deps import get_session
from oraya_control.api.bridge.auth import BridgeAuth, require_scope
from oraya_control.api.bridge.schemas import (
    RESEARCH_ACTIONS,
    ResearchActionRequest,
    ResearchFindingResponse,
    ResearchJobResponse,
)
from oraya_control.api.errors import AuthorizationError, ValidationError
from oraya_control.api.services.research import ResearchService
from oraya_control.licensing import PlanEnforcer
from oraya_control.models.bridge import ResearchJobStatus
from oraya_control.utils.datetime import to_utc, utc_now

logger = logging.getLogger(__name__)

RESEARCH_FEATURE = "managed_ai"

router = APIRouter(prefix="/api/v1/research", tags=["bridge"])


def _job(job: Any) -> dict[str, Any]:
    return ResearchJobResponse.model_validate(job).model_dump(mode="json")


def _finding(finding: Any) -> dict[str, Any]:
    return ResearchFindingResponse.model_validate(finding).model_dump(mode="json")


def _server_time() -> str:
    return utc_now().isoformat()


@router.get("")
async def list_research(
    since: Optional[datetime] = None,
    job_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    auth: BridgeAuth = Depends(require_scope("read")),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    svc = ResearchService(session, auth.user_id)
    since_utc = to_utc(since)

    if job_id:
        job = await svc.get_job_or_404(job_id)
        findings = await svc.findings(job.id, since=since_utc, limit=limit)
        return {
            "job": _job(job),
            "findings": [_finding(f) for f in findings],
            "total_findings": await svc.count_findings(job.id),
            "server_time": _server_time(),
        }

    jobs = await svc.list_jobs(status=status, limit=limit)
    body: dict[str, Any] = {
        "jobs": [_job(j) for j in jobs],
        "total_jobs": len(jobs),
    }
    if since_utc is not None:
        new_findings = await svc.new_findings_since([j.id for j in jobs], since_utc)
        body["new_findings"] = [_finding(f) for f in new_findings]
        body["findings_since"] = since_utc.isoformat()
    body["server_time"] = _server_time()
    return body


@router.post("")
async def research_action(
    payload: ResearchActionRequest,
    auth: BridgeAuth = Depends(require_scope("write")),
    session: AsyncSession = Depends(get_session),
):
    svc = ResearchService(session, auth.user_id)
    action = payload.action

    if action == "create":
        if not payload.name or not payload.query:
            raise ValidationError("name and query are required")

        access = await PlanEnforcer(session).enforce_access(
            auth.user_id, RESEARCH_FEATURE
        )
        if not access.allowed:
            raise AuthorizationError(access.reason, code="PLAN_FEATURE_REQUIRED")

        job = await svc.create_job(
            name=payload.name,
            query=payload.query,
            schedule=payload.schedule,
            sources=payload.sources,
            config=payload.config,
            device_id=auth.device_id,
        )
        return JSONResponse(status_code=201, content={"job": _job(job), "created": True})

    if action in ("pause", "resume"):
        if not payload.job_id:
            raise ValidationError("job_id required")
        target = (
            ResearchJobStatus.PAUSED if action == "pause" else ResearchJobStatus.RUNNING
        )
        new_status = await svc.set_status(payload.job_id, target)
        return {"success": True, "status": new_status}

    if action == "delete":
        if not payload.job_id:
            raise ValidationError("job_id required")
        await svc.delete_job(payload.job_id)
        return {"success": True, "deleted": True}

    if action == "submit_finding":
        if not payload.job_id or not payload.title:
            raise ValidationError("job_id and title are required")
        finding = await svc.submit_finding(
            payload.job_id,
            title=payload.title,
            summary=payload.summary,
            source_url=payload.source_url,
            relevance_score=payload.relevance_score,
            raw_data=payload.raw_data,
            device_id=auth.device_id,
        )
        return JSONResponse(
            status_code=201,
            content={"finding": _finding(finding), "submitted": True},
        )

    raise ValidationError("Unknown action", valid_actions=list(RESEARCH_ACTIONS))
