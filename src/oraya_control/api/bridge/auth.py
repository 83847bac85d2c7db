"""Authentication for the desktop bridge API.

Three credentials are accepted, checked in this order:

1. ``Authorization: Bearer ora_...``, a user API key with its own scopes,
2. ``X-License-Key`` together with ``X-Device-ID``,
3. ``Authorization: Bearer <jwt>``, a user access token.

Scope ``admin`` satisfies any required scope.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import Depends, Header
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.admin.deps import get_session
from oraya_control.api.errors import (
    AuthenticationError,
    AuthorizationError,
    ValidationError,
)
from oraya_control.api.services.auth import extract_token_from_header, get_auth_service
from oraya_control.models.bridge import ApiKey
from oraya_control.models.licensing import License, LicenseStatus
from oraya_control.utils.datetime import to_utc, utc_now

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "ora_"
DEFAULT_KEY_SCOPES = ["read"]
FULL_SCOPES = ["read", "write", "use_tokens"]
ADMIN_SCOPE = "admin"
AUTH_HINT = (
    "Provide one of: Bearer API key, X-License-Key header, or Bearer JWT token"
)


@dataclass
class BridgeAuth:
    user_id: uuid.UUID
    license_id: Optional[uuid.UUID] = None
    device_id: Optional[str] = None
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_KEY_SCOPES))


def has_scope(auth: BridgeAuth, scope: str) -> bool:
    return scope in auth.scopes or ADMIN_SCOPE in auth.scopes


async def _authenticate_api_key(
    db: AsyncSession, key: str, device_id: Optional[str]
) -> BridgeAuth:
    result = await db.execute(select(ApiKey).where(ApiKey.key == key))
    record = result.scalar_one_or_none()
    if record is None:
        raise AuthenticationError("Invalid API key")
    if not record.is_active:
        raise AuthorizationError("API key is deactivated")
    if record.expires_at is not None and to_utc(record.expires_at) < utc_now():
        raise AuthorizationError("API key has expired")

    await db.execute(
        update(ApiKey)
        .where(ApiKey.id == record.id)
        .values(last_used_at=utc_now(), request_count=ApiKey.request_count + 1)
        .execution_options(synchronize_session=False)
    )
    return BridgeAuth(
        user_id=record.user_id,
        device_id=device_id,
        scopes=list(record.scopes or DEFAULT_KEY_SCOPES),
    )


async def _authenticate_license(
    db: AsyncSession, license_key: str, device_id: Optional[str]
) -> BridgeAuth:
    if not device_id:
        raise ValidationError("X-Device-ID header required with license key auth")

    result = await db.execute(
        select(License).where(License.license_key == license_key)
    )
    license_row = result.scalar_one_or_none()
    if license_row is None:
        raise AuthenticationError("Invalid license key")
    if license_row.status != LicenseStatus.ACTIVE.value:
        raise AuthorizationError("License is not active", status=license_row.status)

    return BridgeAuth(
        user_id=license_row.user_id,
        license_id=license_row.id,
        device_id=device_id,
        scopes=list(FULL_SCOPES),
    )


def _authenticate_token(token: str, device_id: Optional[str]) -> BridgeAuth:
    session = get_auth_service().get_user_session(token)
    if session is None:
        raise AuthenticationError("Invalid or expired session")
    try:
        user_id = uuid.UUID(session.user_id)
    except ValueError:
        raise AuthenticationError("Invalid or expired session") from None
    return BridgeAuth(user_id=user_id, device_id=device_id, scopes=list(FULL_SCOPES))


async def authenticate_bridge(
    authorization: Annotated[Optional[str], Header()] = None,
    x_license_key: Annotated[Optional[str], Header()] = None,
    x_device_id: Annotated[Optional[str], Header()] = None,
    db: AsyncSession = Depends(get_session),
) -> BridgeAuth:
    token = extract_token_from_header(authorization)
    if token and token.startswith(API_KEY_PREFIX):
        return await _authenticate_api_key(db, token, x_device_id)
    if x_license_key:
        return await _authenticate_license(db, x_license_key, x_device_id)
    if token:
        return _authenticate_token(token, x_device_id)
    raise AuthenticationError("Authentication required", hint=AUTH_HINT)


def require_scope(scope: str) -> Callable[..., Awaitable[BridgeAuth]]:
    """Dependency factory: bridge caller holding ``scope``."""

    async def dependency(
        auth: BridgeAuth = Depends(authenticate_bridge),
    ) -> BridgeAuth:
        if not has_scope(auth, scope):
            raise AuthorizationError(
                f"Insufficient permissions. Required scope: {scope}"
            )
        return auth

    return dependency
