from __future__ import annotations

import logging
import os

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.admin.deps import client_ip, get_session
from oraya_control.api.admin.schemas import AdminProfile, LoginRequest, LoginResponse
from oraya_control.api.services.audit import AuditService
from oraya_control.api.services.auth import (
    ADMIN_SESSION_COOKIE,
    ADMIN_SESSION_EXPIRE_HOURS,
    AdminLoginService,
)
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.models.audit import AuditAction, AuditResourceType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/superadmin/auth", tags=["superadmin-auth"])


def _secure_cookies() -> bool:
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
) -> LoginResponse:
    admin, token = await AdminLoginService(session).login(
        payload.email or "", payload.password or ""
    )

    try:
        async with session.begin_nested():
            await AuditService(session).log(
                action=AuditAction.LOGIN,
                resource_type=AuditResourceType.PLATFORM_ADMIN,
                resource_id=str(admin.id),
                admin_id=admin.id,
                admin_email=admin.email,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
    except Exception as exc:
        logger.error(
            "Failed to write login audit entry for %s: %s",
            sanitize_for_log(admin.email),
            sanitize_for_log(str(exc)),
        )

    response.set_cookie(
        key=ADMIN_SESSION_COOKIE,
        value=token,
        max_age=ADMIN_SESSION_EXPIRE_HOURS * 3600,
        httponly=True,
        secure=_secure_cookies(),
        samesite="lax",
        path="/",
    )
    return LoginResponse(
        token=token,
        admin=AdminProfile(
            id=str(admin.id),
            email=admin.email,
            full_name=admin.full_name,
            role=admin.role,
        ),
    )


@router.post("/logout")
async def logout(response: Response) -> dict:
    response.delete_cookie(ADMIN_SESSION_COOKIE, path="/")
    return {"success": True, "message": "Logout successful"}
