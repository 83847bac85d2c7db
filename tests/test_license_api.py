from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import select

from oraya_control.models import DeviceActivation

ACTIVATE_URL = "/api/license/activate-device"
ORA_KEY = "ora_0123456789abcdef0123456789abcdef"


@pytest_asyncio.fixture
async def owner(seed):
    await seed.plan("pro", max_devices=2)
    user = await seed.user(email="desk@example.com", full_name="Desk User", ora_key=ORA_KEY)
    await seed.license(user, "pro")
    return user


async def _activations(session_maker, user_id) -> list[DeviceActivation]:
    async with session_maker() as s:
        result = await s.execute(
            select(DeviceActivation).where(DeviceActivation.user_id == user_id)
        )
        return list(result.scalars().all())


async def _activate(client, device_id: str, ora_key: str = ORA_KEY, **extra):
    return await client.post(
        ACTIVATE_URL, json={"ora_key": ora_key, "device_id": device_id, **extra}
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload", [{}, {"ora_key": ORA_KEY}, {"device_id": "mac-1"}]
)
async def test_activation_requires_key_and_device(client, session_maker, payload):
    resp = await client.post(ACTIVATE_URL, json=payload)

    assert resp.status_code == 400
    assert resp.json() == {
        "error": "ora_key and device_id are required",
        "code": "MISSING_PARAMS",
    }


@pytest.mark.asyncio
async def test_unknown_ora_key_is_401(client, owner):
    resp = await _activate(client, "mac-1", ora_key="ora_unknown")

    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_KEY"


@pytest.mark.asyncio
async def test_suspended_account_is_403(client, seed, session_maker):
    user = await seed.user(ora_key="ora_suspended", account_status="suspended")

    resp = await _activate(client, "mac-1", ora_key="ora_suspended")

    assert resp.status_code == 403
    assert resp.json()["code"] == "ACCOUNT_INACTIVE"
    assert await _activations(session_maker, user.id) == []


@pytest.mark.asyncio
async def test_activate_device(client, owner, session_maker):
    resp = await _activate(
        client,
        "mac-1",
        device_name="Studio Mac",
        device_platform="darwin",
        app_version="1.4.0",
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["user"] == {
        "id": str(owner.id),
        "email": "desk@example.com",
        "name": "Desk User",
        "ora_key": ORA_KEY,
    }
    assert body["plan_id"] == "pro"
    assert body["license_status"] == "active"

    [activation] = await _activations(session_maker, owner.id)
    assert str(activation.id) == body["activation_id"]
    assert activation.device_name == "Studio Mac"
    assert activation.device_platform == "darwin"
    assert activation.app_version == "1.4.0"
    assert activation.is_active is True
    assert activation.license_id is not None


@pytest.mark.asyncio
async def test_reactivating_same_device_does_not_use_a_slot(
    client, owner, session_maker
):
    await _activate(client, "mac-1")
    await _activate(client, "mac-2")

    again = await _activate(client, "mac-1", app_version="1.5.0")

    assert again.status_code == 200
    activations = await _activations(session_maker, owner.id)
    assert len(activations) == 2
    by_device = {a.device_id: a for a in activations}
    assert by_device["mac-1"].app_version == "1.5.0"
    assert by_device["mac-1"].device_name == "Unknown Device"


@pytest.mark.asyncio
async def test_device_limit_is_403(client, owner, session_maker):
    await _activate(client, "mac-1")
    await _activate(client, "mac-2")

    resp = await _activate(client, "mac-3")

    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "DEVICE_LIMIT_REACHED"
    assert body["current"] == 2
    assert body["max"] == 2
    assert len(await _activations(session_maker, owner.id)) == 2


@pytest.mark.asyncio
async def test_user_without_plan_gets_one_device(client, seed, session_maker):
    user = await seed.user(ora_key="ora_noplan")

    first = await _activate(client, "pc-1", ora_key="ora_noplan")
    second = await _activate(client, "pc-2", ora_key="ora_noplan")

    assert first.status_code == 200
    assert first.json()["plan_id"] is None
    assert second.status_code == 403
    assert second.json()["code"] == "DEVICE_LIMIT_REACHED"
    assert len(await _activations(session_maker, user.id)) == 1
