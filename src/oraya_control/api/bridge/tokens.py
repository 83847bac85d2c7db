"""Managed-AI token balance and deduction for desktop clients.

Tokens are metered against the ``tokens`` quota of the caller's active
license; every deduction also counts as one AI call.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.admin.deps import get_session
from oraya_control.api.bridge.auth import BridgeAuth, require_scope
from oraya_control.api.errors import (
    DomainRuleViolation,
    NotFoundError,
    ValidationError,
)
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.licensing import PlanEnforcer
from oraya_control.models.licensing import QuotaType
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

# Share of the monthly allowance below which the balance is flagged low
LOW_BALANCE_RATIO = 0.1

router = APIRouter(prefix="/api/v1/tokens", tags=["bridge"])


class DeductTokensRequest(BaseModel):
    tokens: Optional[int] = None
    service: Optional[str] = None
    operation: Optional[str] = None
    device_id: Optional[str] = None


def _server_time() -> str:
    return utc_now().isoformat()


@router.get("/balance")
async def token_balance(
    auth: BridgeAuth = Depends(require_scope("read")),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    quota = await PlanEnforcer(session).get_remaining_quota(
        auth.user_id, QuotaType.TOKENS
    )
    if quota.usage is None:
        raise NotFoundError(quota.reason or "No active license")

    limit = quota.usage["limit"]
    remaining = quota.usage["remaining"]
    unlimited = remaining is None
    return {
        "plan_id": quota.plan.id if quota.plan else None,
        "used": quota.usage["used"],
        "limit": limit,
        "remaining": remaining,
        "unlimited": unlimited,
        "low_balance": not unlimited and remaining <= limit * LOW_BALANCE_RATIO,
        "server_time": _server_time(),
    }


@router.post("/deduct")
async def deduct_tokens(
    payload: DeductTokensRequest,
    auth: BridgeAuth = Depends(require_scope("use_tokens")),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    if payload.tokens is None or payload.tokens <= 0:
        raise ValidationError("tokens must be a positive number")
    if not payload.service:
        raise ValidationError("service is required")

    enforcer = PlanEnforcer(session)
    quota = await enforcer.get_remaining_quota(auth.user_id, QuotaType.TOKENS)
    if quota.usage is None:
        raise NotFoundError(quota.reason or "No active license")

    used_before = quota.usage["used"]
    remaining = quota.usage["remaining"]
    if remaining is not None and remaining < payload.tokens:
        raise DomainRuleViolation(
            "Insufficient token balance",
            status_code=402,
            code="INSUFFICIENT_TOKENS",
            requested=payload.tokens,
            remaining=remaining,
            shortfall=payload.tokens - remaining,
        )

    await enforcer.increment_usage(auth.user_id, QuotaType.TOKENS, payload.tokens)
    await enforcer.increment_usage(auth.user_id, QuotaType.AI_CALLS, 1)

    logger.info(
        "Deducted %s tokens for user %s (service=%s operation=%s device=%s)",
        payload.tokens,
        auth.user_id,
        sanitize_for_log(payload.service),
        sanitize_for_log(payload.operation),
        sanitize_for_log(payload.device_id or auth.device_id),
    )
    used_after = used_before + payload.tokens
    return {
        "success": True,
        "tokens_deducted": payload.tokens,
        "used_before": used_before,
        "used_after": used_after,
        "remaining": None if remaining is None else remaining - payload.tokens,
        "limit_reached": remaining is not None and remaining - payload.tokens <= 0,
        "server_time": _server_time(),
    }
