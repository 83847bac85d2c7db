from __future__ import annotations

import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from stripe import SignatureVerificationError

from oraya_control.api.billing.stripe_client import (
    PaymentsClientFactory,
    get_payments_client_factory,
)
from oraya_control.models import License, StripeCustomer

WEBHOOK_URL = "/api/stripe/webhooks"
SIGNED = {"stripe-signature": "t=1,v1=abc"}

PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z


@pytest.fixture
def stripe_client():
    return MagicMock(name="StripeClient")


@pytest.fixture
def payments(app, stripe_client, monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    factory = PaymentsClientFactory(client_factory=lambda key: stripe_client)
    app.dependency_overrides[get_payments_client_factory] = lambda: factory
    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def deliver(client, stripe_client):
    """Post a verified event of ``event_type`` carrying ``data_object``."""

    async def _deliver(event_type: str, data_object: dict):
        stripe_client.construct_event.return_value = SimpleNamespace(
            type=event_type, data=SimpleNamespace(object=data_object)
        )
        return await client.post(WEBHOOK_URL, content=b"{}", headers=SIGNED)

    return _deliver


def _subscription(
    user_id=None, plan_id="pro", status="active", sub_id="sub_1", **metadata
) -> dict:
    if user_id is not None:
        metadata["user_id"] = str(user_id)
    if plan_id is not None:
        metadata["plan_id"] = plan_id
    return {
        "id": sub_id,
        "customer": "cus_1",
        "status": status,
        "metadata": metadata,
        "items": {
            "data": [
                {
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                    "price": {"unit_amount": 1900},
                }
            ]
        },
    }


async def _licenses(session_maker, user_id) -> list[License]:
    async with session_maker() as s:
        result = await s.execute(
            select(License)
            .where(License.user_id == user_id)
            .order_by(License.created_at.asc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_signature_is_400(client, payments):
    resp = await client.post(WEBHOOK_URL, content=b"{}")

    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing Stripe signature"}


@pytest.mark.asyncio
async def test_invalid_signature_is_400(client, payments, stripe_client):
    stripe_client.construct_event.side_effect = SignatureVerificationError(
        "No signatures found matching the expected signature", "t=1,v1=abc"
    )

    resp = await client.post(WEBHOOK_URL, content=b"{}", headers=SIGNED)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid Stripe signature"}


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_500(client, payments, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

    resp = await client.post(WEBHOOK_URL, content=b"{}", headers=SIGNED)

    assert resp.status_code == 500
    assert resp.json() == {"error": "Webhook secret not configured"}


@pytest.mark.asyncio
async def test_event_is_verified_with_raw_body(client, payments, stripe_client):
    stripe_client.construct_event.return_value = SimpleNamespace(
        type="checkout.session.completed", data=SimpleNamespace(object={})
    )

    resp = await client.post(WEBHOOK_URL, content=b'{"id": "evt_1"}', headers=SIGNED)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    stripe_client.construct_event.assert_called_once_with(
        b'{"id": "evt_1"}', "t=1,v1=abc", "whsec_test"
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subscription_created_grants_license(
    seed, session_maker, payments, deliver
):
    await seed.plan("pro")
    user = await seed.user()

    resp = await deliver(
        "customer.subscription.created",
        _subscription(user.id, billing_cycle="yearly"),
    )

    assert resp.status_code == 200
    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.plan_id == "pro"
    assert license_row.status == "active"
    assert license_row.billing_cycle == "yearly"
    assert license_row.stripe_subscription_id == "sub_1"
    assert license_row.amount_paid == 19.0
    assert license_row.is_trial is False
    assert license_row.current_period_end.replace(tzinfo=timezone.utc) == datetime(
        2026, 2, 1, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_subscription_user_resolved_from_customer(
    seed, session_maker, payments, deliver
):
    await seed.plan("pro")
    user = await seed.user()
    async with session_maker() as s:
        s.add(
            StripeCustomer(
                id=uuid.uuid4(), user_id=user.id, stripe_customer_id="cus_1"
            )
        )
        await s.commit()

    resp = await deliver(
        "customer.subscription.created", _subscription(status="trialing")
    )

    assert resp.status_code == 200
    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.plan_id == "pro"
    assert license_row.status == "active"
    assert license_row.is_trial is True


@pytest.mark.asyncio
async def test_subscription_for_unknown_user_is_acknowledged(
    seed, session_maker, payments, deliver
):
    await seed.plan("pro")

    resp = await deliver(
        "customer.subscription.created", _subscription(uuid.uuid4())
    )

    assert resp.status_code == 200
    async with session_maker() as s:
        assert (await s.execute(select(License))).scalars().all() == []


@pytest.mark.asyncio
async def test_subscription_updated_moves_plan_and_status(
    seed, session_maker, payments, deliver
):
    await seed.plan("pro")
    await seed.plan("max")
    user = await seed.user()
    await seed.license(user, "pro", stripe_subscription_id="sub_1", amount_paid=19)

    resp = await deliver(
        "customer.subscription.updated",
        _subscription(user.id, plan_id="max", status="past_due"),
    )

    assert resp.status_code == 200
    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.plan_id == "max"
    assert license_row.status == "payment_failed"
    assert license_row.amount_paid == 19


@pytest.mark.asyncio
async def test_subscription_deleted_falls_back_to_free(
    seed, session_maker, payments, deliver
):
    await seed.plan("free")
    await seed.plan("pro")
    user = await seed.user()
    await seed.license(user, "pro", stripe_subscription_id="sub_1")

    resp = await deliver(
        "customer.subscription.deleted", _subscription(user.id, status="canceled")
    )

    assert resp.status_code == 200
    licenses = {lic.plan_id: lic.status for lic in await _licenses(session_maker, user.id)}
    assert licenses == {"pro": "cancelled", "free": "active"}


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_renewal_invoice_resets_usage(seed, session_maker, payments, deliver):
    await seed.plan("pro")
    user = await seed.user()
    await seed.license(
        user,
        "pro",
        status="payment_failed",
        stripe_subscription_id="sub_1",
        tokens_used=5000,
        ai_calls_used=40,
        usage_limit_reached=True,
    )

    resp = await deliver(
        "invoice.paid",
        {"subscription": "sub_1", "billing_reason": "subscription_cycle"},
    )

    assert resp.status_code == 200
    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.status == "active"
    assert license_row.tokens_used == 0
    assert license_row.ai_calls_used == 0
    assert license_row.usage_limit_reached is False


@pytest.mark.asyncio
async def test_first_invoice_keeps_usage(seed, session_maker, payments, deliver):
    await seed.plan("pro")
    user = await seed.user()
    await seed.license(user, "pro", stripe_subscription_id="sub_1", tokens_used=10)

    await deliver(
        "invoice.paid",
        {"subscription": "sub_1", "billing_reason": "subscription_create"},
    )

    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.tokens_used == 10


@pytest.mark.asyncio
async def test_payment_failed_marks_license(seed, session_maker, payments, deliver):
    await seed.plan("pro")
    user = await seed.user()
    await seed.license(user, "pro", stripe_subscription_id="sub_1")

    resp = await deliver(
        "invoice.payment_failed", {"subscription": "sub_1", "customer": "cus_1"}
    )

    assert resp.status_code == 200
    [license_row] = await _licenses(session_maker, user.id)
    assert license_row.status == "payment_failed"
