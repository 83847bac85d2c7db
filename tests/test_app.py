from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from oraya_control import __version__
from oraya_control.api.errors import (
    ControlPlaneError,
    DomainRuleViolation,
    PaymentProviderError,
)
from oraya_control.api.utils.logging import (
    REDACTED,
    configure_logging,
    redact_sensitive,
    sanitize_for_log,
)
from oraya_control.utils.datetime import isoformat_or_none, to_utc


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__}


@pytest.mark.asyncio
async def test_unknown_route_uses_error_body(client):
    resp = await client.get("/api/nope")

    assert resp.status_code == 404
    assert resp.json() == {"error": "Not Found"}


@pytest.mark.asyncio
async def test_malformed_body_is_400(client, admin_headers):
    resp = await client.post(
        "/api/superadmin/organizations",
        content=b"{not json",
        headers={**admin_headers(), "Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert "error" in resp.json()


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------


def test_error_body_merges_extra_fields():
    exc = DomainRuleViolation(
        "Plan requires organization", status_code=422, requires_organization=True, hint=None
    )

    assert exc.status_code == 422
    assert exc.to_body() == {
        "error": "Plan requires organization",
        "requires_organization": True,
    }


def test_default_status_codes():
    assert ControlPlaneError("boom").status_code == 500
    assert DomainRuleViolation("taken").status_code == 409
    assert PaymentProviderError("down").status_code == 502


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def test_sanitize_for_log_strips_control_characters():
    assert sanitize_for_log("admin@x.com\r\nFAKE ENTRY") == "admin@x.com FAKE ENTRY"
    assert sanitize_for_log(None) == ""
    assert sanitize_for_log("a" * 20, max_length=5) == "aaaaa...[truncated]"
    assert sanitize_for_log({"k\n": ["v\x00"]}) == {"k ": ["v"]}


def test_redact_sensitive_is_recursive():
    context = {
        "stripe.secret_key": "sk_live",
        "email": "a@b.c",
        "nested": {"password": "pw", "plan_id": "pro"},
    }

    assert redact_sensitive(context) == {
        "stripe.secret_key": REDACTED,
        "email": "a@b.c",
        "nested": {"password": REDACTED, "plan_id": "pro"},
    }
    assert redact_sensitive(None) == {}


def test_configure_logging_honours_log_level(monkeypatch):
    root = logging.getLogger()
    previous = root.level
    monkeypatch.setenv("LOG_LEVEL", "warning")
    try:
        configure_logging()
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)


# ---------------------------------------------------------------------------
# Datetimes
# ---------------------------------------------------------------------------


def test_to_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    offset = datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert to_utc(None) is None
    assert to_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert to_utc(offset) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert isoformat_or_none(naive) == "2026-01-01T12:00:00+00:00"
