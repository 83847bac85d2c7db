from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import Cookie, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import AuthenticationError, AuthorizationError
from oraya_control.api.services.auth import (
    ADMIN_SESSION_COOKIE,
    AdminSession,
    extract_token_from_header,
    get_auth_service,
)
from oraya_control.db import get_session as db_session
from oraya_control.models.users import AdminRole


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with db_session() as session:
        yield session


@dataclass
class AdminContext:
    """An authenticated, authorized superadmin request."""

    admin: AdminSession
    db: AsyncSession
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def admin_id(self) -> str:
        return self.admin.admin_id

    @property
    def admin_email(self) -> str:
        return self.admin.email


async def require_admin_session(
    authorization: Annotated[str | None, Header()] = None,
    superadmin_session: Annotated[
        str | None, Cookie(alias=ADMIN_SESSION_COOKIE)
    ] = None,
) -> AdminSession:
    """Authenticate a superadmin from the bearer token or session cookie."""
    token = extract_token_from_header(authorization) or superadmin_session
    if not token:
        raise AuthenticationError("Not authenticated")

    session = get_auth_service().get_admin_session(token)
    if session is None:
        raise AuthenticationError("Invalid or expired session")
    return session


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def require_admin_role(
    role: AdminRole | str,
) -> Callable[..., Awaitable[AdminContext]]:
    """Dependency factory: authenticated admin with at least ``role``."""
    required = role.value if isinstance(role, AdminRole) else role

    async def dependency(
        request: Request,
        admin: AdminSession = Depends(require_admin_session),
        db: AsyncSession = Depends(get_session),
    ) -> AdminContext:
        if not admin.has_role(required):
            raise AuthorizationError(
                f"Insufficient permissions. Required role: {required}"
            )
        return AdminContext(
            admin=admin,
            db=db,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )

    return dependency


require_readonly = require_admin_role(AdminRole.READONLY)
require_admin = require_admin_role(AdminRole.ADMIN)
require_superadmin = require_admin_role(AdminRole.SUPERADMIN)
