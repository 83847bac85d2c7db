from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from oraya_control.api.services.auth import (
    AuthService,
    extract_token_from_header,
)
from oraya_control.models import PlatformAdmin

LOGIN_URL = "/api/superadmin/auth/login"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def test_admin_token_round_trip():
    svc = AuthService(secret_key="k" * 32)
    token = svc.create_admin_token("admin-1", "ops@oraya.dev", "support", {"refunds": True})

    session = svc.get_admin_session(token)

    assert session.admin_id == "admin-1"
    assert session.role == "support"
    assert session.permissions == {"refunds": True}
    assert session.has_role("readonly")
    assert not session.has_role("admin")


def test_token_types_are_not_interchangeable():
    svc = AuthService(secret_key="k" * 32)
    admin_token = svc.create_admin_token("admin-1", "ops@oraya.dev", "superadmin")
    user_token = svc.create_user_token("user-1", "user@example.com")

    assert svc.get_user_session(admin_token) is None
    assert svc.get_admin_session(user_token) is None


def test_expired_and_foreign_tokens_are_rejected():
    svc = AuthService(secret_key="k" * 32)
    expired = svc.create_admin_token(
        "admin-1", "ops@oraya.dev", "superadmin", expires_delta=timedelta(seconds=-1)
    )
    foreign = AuthService(secret_key="other" * 8).create_admin_token(
        "admin-1", "ops@oraya.dev", "superadmin"
    )

    assert svc.get_admin_session(expired) is None
    assert svc.get_admin_session(foreign) is None


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        (None, None),
    ],
)
def test_extract_token_from_header(header, expected):
    assert extract_token_from_header(header) == expected


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_login_sets_cookie_and_audits(client, seed, session_maker, audit_rows, auth_service):
    admin = await seed.admin("ops@oraya.dev", "hunter22", role="admin", full_name="Ops")

    resp = await client.post(
        LOGIN_URL,
        json={"email": "OPS@oraya.dev", "password": "hunter22"},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["admin"] == {
        "id": str(admin.id),
        "email": "ops@oraya.dev",
        "full_name": "Ops",
        "role": "admin",
    }
    session = auth_service.get_admin_session(body["token"])
    assert session.admin_id == str(admin.id)

    cookie = resp.headers["set-cookie"]
    assert cookie.startswith(f"superadmin_session={body['token']}")
    assert "HttpOnly" in cookie
    assert "Secure" not in cookie

    async with session_maker() as s:
        stored = await s.get(PlatformAdmin, admin.id)
    assert stored.last_login_at is not None
    assert stored.failed_login_attempts == 0

    rows = await audit_rows(action="auth.login")
    assert len(rows) == 1
    assert rows[0].resource_type == "platform_admin"
    assert rows[0].resource_id == str(admin.id)
    assert rows[0].ip_address == "203.0.113.9"


@pytest.mark.asyncio
async def test_cookie_is_secure_in_production(client, seed, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    await seed.admin("ops@oraya.dev", "hunter22")

    resp = await client.post(
        LOGIN_URL, json={"email": "ops@oraya.dev", "password": "hunter22"}
    )

    assert "Secure" in resp.headers["set-cookie"]


@pytest.mark.asyncio
async def test_login_requires_credentials(client, session_maker):
    resp = await client.post(LOGIN_URL, json={"email": "ops@oraya.dev"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Email and password are required"


@pytest.mark.asyncio
async def test_unknown_and_inactive_admins(client, seed):
    await seed.admin("gone@oraya.dev", "hunter22", is_active=False)

    unknown = await client.post(
        LOGIN_URL, json={"email": "nobody@oraya.dev", "password": "x"}
    )
    inactive = await client.post(
        LOGIN_URL, json={"email": "gone@oraya.dev", "password": "hunter22"}
    )

    assert unknown.status_code == 401
    assert inactive.status_code == 401
    assert unknown.json() == inactive.json() == {"error": "Invalid credentials"}


@pytest.mark.asyncio
async def test_fifth_failure_locks_account(client, seed, session_maker):
    admin = await seed.admin("ops@oraya.dev", "hunter22")

    for _ in range(4):
        resp = await client.post(
            LOGIN_URL, json={"email": "ops@oraya.dev", "password": "wrong"}
        )
        assert resp.status_code == 401

    async with session_maker() as s:
        stored = await s.get(PlatformAdmin, admin.id)
    assert stored.failed_login_attempts == 4
    assert stored.locked_until is None

    fifth = await client.post(
        LOGIN_URL, json={"email": "ops@oraya.dev", "password": "wrong"}
    )
    assert fifth.status_code == 401

    locked = await client.post(
        LOGIN_URL, json={"email": "ops@oraya.dev", "password": "hunter22"}
    )
    assert locked.status_code == 423
    assert locked.json()["error"] == "Account is temporarily locked. Try again later."


@pytest.mark.asyncio
async def test_expired_lock_allows_login_and_resets_counter(client, seed, session_maker):
    admin = await seed.admin(
        "ops@oraya.dev",
        "hunter22",
        failed_login_attempts=5,
        locked_until=datetime.now(timezone.utc) - timedelta(minutes=1),
    )

    resp = await client.post(
        LOGIN_URL, json={"email": "ops@oraya.dev", "password": "hunter22"}
    )

    assert resp.status_code == 200
    async with session_maker() as s:
        stored = await s.get(PlatformAdmin, admin.id)
    assert stored.failed_login_attempts == 0
    assert stored.locked_until is None


@pytest.mark.asyncio
async def test_logout_clears_cookie(client):
    resp = await client.post("/api/superadmin/auth/logout")

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Logout successful"}
    cookie = resp.headers["set-cookie"]
    assert cookie.startswith('superadmin_session=""')
    assert "Max-Age=0" in cookie
