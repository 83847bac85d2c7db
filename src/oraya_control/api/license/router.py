"""Desktop device activation with a user's ORA key."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.admin.deps import get_session
from oraya_control.api.errors import ValidationError
from oraya_control.api.services.devices import DeviceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/license", tags=["license"])


class ActivateDeviceRequest(BaseModel):
    ora_key: Optional[str] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    device_platform: Optional[str] = None
    app_version: Optional[str] = None


@router.post("/activate-device")
async def activate_device(
    payload: ActivateDeviceRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    if not payload.ora_key or not payload.device_id:
        raise ValidationError(
            "ora_key and device_id are required", code="MISSING_PARAMS"
        )

    registration = await DeviceService(session).activate(
        payload.ora_key,
        payload.device_id,
        device_name=payload.device_name,
        device_platform=payload.device_platform,
        app_version=payload.app_version,
    )
    user, license_row = registration.user, registration.license
    return {
        "success": True,
        "user": {
            "id": str(user.id),
            "email": user.email,
            "name": user.full_name,
            "ora_key": user.ora_key,
        },
        "plan_id": license_row.plan_id if license_row else None,
        "license_status": license_row.status if license_row else None,
        "activation_id": str(registration.activation.id),
    }
