from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.errors import (
    AuthenticationError,
    AuthorizationError,
    DomainRuleViolation,
)
from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.db import is_unique_violation
from oraya_control.licensing import PlanEnforcer
from oraya_control.models.licensing import DeviceActivation, License
from oraya_control.models.users import AccountStatus, User
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

INACTIVE_ACCOUNT_STATUSES = (
    AccountStatus.SUSPENDED.value,
    AccountStatus.DELETED.value,
)
DEFAULT_DEVICE_NAME = "Unknown Device"


@dataclass
class DeviceRegistration:
    user: User
    activation: DeviceActivation
    license: License | None


class DeviceService:
    """Registers desktop installs against a user's ORA key."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_by_ora_key(self, ora_key: str) -> User | None:
        result = await self.session.execute(select(User).where(User.ora_key == ora_key))
        return result.scalar_one_or_none()

    async def get_activation(
        self, user_id: uuid.UUID, device_id: str
    ) -> DeviceActivation | None:
        result = await self.session.execute(
            select(DeviceActivation).where(
                DeviceActivation.user_id == user_id,
                DeviceActivation.device_id == device_id,
            )
        )
        return result.scalar_one_or_none()

    async def activate(
        self,
        ora_key: str,
        device_id: str,
        device_name: str | None = None,
        device_platform: str | None = None,
        app_version: str | None = None,
    ) -> DeviceRegistration:
        """Activate ``device_id`` for the key's owner.

        A device that is already active is refreshed without counting against
        the plan's device limit; a new or deactivated device must fit in it.
        """
        user = await self.get_user_by_ora_key(ora_key)
        if user is None:
            logger.warning("Invalid ORA key activation attempt")
            raise AuthenticationError(
                "Invalid ORA Key. Please check the key and try again.",
                code="INVALID_KEY",
            )
        if user.account_status in INACTIVE_ACCOUNT_STATUSES:
            raise AuthorizationError(
                "This account is no longer active.", code="ACCOUNT_INACTIVE"
            )

        enforcer = PlanEnforcer(self.session)
        activation = await self.get_activation(user.id, device_id)
        if activation is None or not activation.is_active:
            check = await enforcer.can_activate_device(user.id)
            if not check.allowed:
                raise AuthorizationError(
                    check.reason, code="DEVICE_LIMIT_REACHED", **(check.details or {})
                )

        license_row = await enforcer.get_user_license(user.id)
        now = utc_now()
        if activation is None:
            activation = DeviceActivation(
                id=uuid.uuid4(), user_id=user.id, device_id=device_id, activated_at=now
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(activation)
                    await self.session.flush()
            except IntegrityError as exc:
                if is_unique_violation(exc):
                    raise DomainRuleViolation(
                        "Device activation already in progress",
                        code="ACTIVATION_CONFLICT",
                    ) from exc
                raise
        elif not activation.is_active:
            activation.activated_at = now

        activation.is_active = True
        activation.license_id = license_row.id if license_row else None
        activation.device_name = (
            device_name or activation.device_name or DEFAULT_DEVICE_NAME
        )
        activation.device_platform = device_platform or activation.device_platform
        activation.app_version = app_version or activation.app_version
        activation.last_seen_at = now
        await self.session.flush()

        logger.info(
            "Device %s activated for user %s",
            sanitize_for_log(device_id),
            user.id,
        )
        return DeviceRegistration(user, activation, license_row)
