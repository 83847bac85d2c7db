"""JWT authentication for superadmin sessions and end-user bridge tokens.

Admin sessions are HS256 tokens carrying ``adminId``, ``email``, ``role`` and
``permissions``; they are returned from the login endpoint and also set as
the ``superadmin_session`` cookie. User tokens are issued to desktop clients
and accepted by the bridge API.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
import jwt
from jwt.exceptions import InvalidTokenError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import (
    AccountLockedError,
    AuthenticationError,
    ControlPlaneError,
    ValidationError,
)
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.models.users import ADMIN_ROLE_LEVELS, PlatformAdmin
from oraya_control.utils.datetime import to_utc, utc_now

logger = logging.getLogger(__name__)

# JWT configuration
JWT_ALGORITHM = "HS256"
ADMIN_SESSION_EXPIRE_HOURS = 24
USER_TOKEN_EXPIRE_HOURS = 24 * 7
ADMIN_SESSION_COOKIE = "superadmin_session"

# Lockout: the fifth consecutive failure locks the account
MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 15


def _get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET_KEY")
    if not secret:
        logger.warning("JWT_SECRET_KEY not set, using a development-only key")
        secret = hashlib.sha256(b"oraya-dev-key-not-for-prod").hexdigest()
    return secret


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


@dataclass
class AdminSession:
    """Superadmin session extracted from a JWT."""

    admin_id: str
    email: str
    role: str
    permissions: dict[str, bool] = field(default_factory=dict)

    @property
    def role_level(self) -> int:
        return ADMIN_ROLE_LEVELS.get(self.role, 0)

    def has_role(self, required: str) -> bool:
        return self.role_level >= ADMIN_ROLE_LEVELS.get(required, 0)


@dataclass
class UserSession:
    """End-user identity extracted from a bridge JWT."""

    user_id: str
    email: str


class AuthService:
    """JWT creation and validation."""

    def __init__(self, secret_key: str | None = None):
        self.secret_key = secret_key or _get_jwt_secret()

    def create_admin_token(
        self,
        admin_id: str,
        email: str,
        role: str,
        permissions: dict[str, bool] | None = None,
        expires_delta: timedelta | None = None,
    ) -> str:
        if expires_delta is None:
            expires_delta = timedelta(hours=ADMIN_SESSION_EXPIRE_HOURS)
        now = datetime.now(timezone.utc)
        payload = {
            "sub": admin_id,
            "adminId": admin_id,
            "email": email,
            "role": role,
            "permissions": permissions or {},
            "type": "admin",
            "exp": now + expires_delta,
            "iat": now,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=JWT_ALGORITHM)

    def create_user_token(
        self,
        user_id: str,
        email: str,
        expires_delta: timedelta | None = None,
    ) -> str:
        if expires_delta is None:
            expires_delta = timedelta(hours=USER_TOKEN_EXPIRE_HOURS)
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "type": "access",
            "exp": now + expires_delta,
            "iat": now,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=JWT_ALGORITHM)

    def validate_token(
        self, token: str, token_type: str = "access"
    ) -> dict[str, Any] | None:
        """Validate a JWT token and return its payload."""
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "sub", "type"]},
            )

            if payload.get("type") != token_type:
                logger.warning("Token type mismatch: expected %s", token_type)
                return None

            return payload
        except jwt.ExpiredSignatureError:
            logger.debug("Token expired")
            return None
        except InvalidTokenError as e:
            logger.debug("Invalid token: %s", e)
            return None

    def get_admin_session(self, token: str) -> AdminSession | None:
        payload = self.validate_token(token, token_type="admin")
        if not payload:
            return None
        return AdminSession(
            admin_id=payload.get("adminId") or payload["sub"],
            email=payload.get("email", ""),
            role=payload.get("role", "readonly"),
            permissions=payload.get("permissions") or {},
        )

    def get_user_session(self, token: str) -> UserSession | None:
        payload = self.validate_token(token, token_type="access")
        if not payload:
            return None
        return UserSession(user_id=payload["sub"], email=payload.get("email", ""))


def extract_token_from_header(authorization: str | None) -> str | None:
    """Extract JWT token from Authorization header."""
    if not authorization:
        return None

    parts = authorization.split()
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token


_auth_service: AuthService | None = None


def get_auth_service() -> AuthService:
    """Get the global auth service instance."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def reset_auth_service() -> None:
    global _auth_service
    _auth_service = None


class AdminLoginService:
    """Password login for platform admins with failed-attempt lockout."""

    def __init__(self, session: AsyncSession, auth: AuthService | None = None):
        self.session = session
        self.auth = auth or get_auth_service()

    async def login(self, email: str, password: str) -> tuple[PlatformAdmin, str]:
        """Verify credentials and return the admin plus a session token.

        Failed attempts are committed before the error is raised so the
        counter survives the request rollback.
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        result = await self.session.execute(
            select(PlatformAdmin).where(
                PlatformAdmin.email == email.strip().lower(),
                PlatformAdmin.is_active.is_(True),
            )
        )
        admin = result.scalar_one_or_none()
        if admin is None:
            raise AuthenticationError("Invalid credentials")

        now = utc_now()
        if admin.locked_until and to_utc(admin.locked_until) > now:
            raise AccountLockedError(
                "Account is temporarily locked. Try again later."
            )

        if not admin.password_hash:
            logger.error(
                "Platform admin has no password hash: %s", sanitize_for_log(admin.email)
            )
            raise ControlPlaneError(
                "Account not configured. Contact system administrator."
            )

        if not verify_password(password, admin.password_hash):
            previous = admin.failed_login_attempts or 0
            admin.failed_login_attempts = previous + 1
            if previous + 1 >= MAX_FAILED_LOGINS:
                admin.locked_until = now + timedelta(minutes=LOCKOUT_MINUTES)
                logger.warning(
                    "Locking platform admin %s after %d failed logins",
                    sanitize_for_log(admin.email),
                    previous + 1,
                )
            else:
                admin.locked_until = None
            await self.session.commit()
            raise AuthenticationError("Invalid credentials")

        admin.failed_login_attempts = 0
        admin.locked_until = None
        admin.last_login_at = now
        await self.session.flush()

        token = self.auth.create_admin_token(
            admin_id=str(admin.id),
            email=admin.email,
            role=admin.role,
            permissions=admin.permissions or {},
        )
        logger.info("Platform admin logged in: %s", sanitize_for_log(admin.email))
        return admin, token
