from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from stripe import StripeError

from oraya_control.api.billing.stripe_client import (
    PaymentsClientFactory,
    get_payments_client_factory,
)
from oraya_control.models import StripeCustomer

CHECKOUT_URL = "/api/stripe/checkout"
PORTAL_URL = "/api/stripe/portal"


@pytest.fixture
def stripe_client():
    client = MagicMock(name="StripeClient")
    client.customers.create.return_value = MagicMock(id="cus_new")
    client.checkout.sessions.create.return_value = MagicMock(
        url="https://checkout.stripe.test/c/pay_123"
    )
    client.billing_portal.sessions.create.return_value = MagicMock(
        url="https://billing.stripe.test/p/session_123"
    )
    client.subscriptions.retrieve.return_value = {
        "items": {"data": [{"id": "si_current"}]}
    }
    return client


@pytest.fixture
def payments(app, stripe_client, monkeypatch):
    """Route billing endpoints to the mocked Stripe client."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    factory = PaymentsClientFactory(client_factory=lambda key: stripe_client)
    app.dependency_overrides[get_payments_client_factory] = lambda: factory
    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def price_env(monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
    monkeypatch.setenv("STRIPE_PRICE_PRO_YEARLY", "price_pro_yearly")


async def _customer(session_maker, user_id):
    async with session_maker() as s:
        result = await s.execute(
            select(StripeCustomer).where(StripeCustomer.user_id == user_id)
        )
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_checkout_requires_user_token(client, payments, admin_headers):
    anonymous = await client.post(CHECKOUT_URL, json={"plan_id": "pro", "billing_cycle": "monthly"})
    as_admin = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "monthly"},
        headers=admin_headers(),
    )

    assert anonymous.status_code == 401
    assert as_admin.status_code == 401
    assert anonymous.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_checkout_creates_customer_and_session(
    client, seed, session_maker, payments, price_env, stripe_client, user_headers
):
    user = await seed.user(email="buyer@example.com", full_name="Buyer")

    resp = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "yearly"},
        headers=user_headers(user),
    )

    assert resp.status_code == 200
    assert resp.json() == {"checkout_url": "https://checkout.stripe.test/c/pay_123"}

    customer_params = stripe_client.customers.create.call_args.kwargs["params"]
    assert customer_params["email"] == "buyer@example.com"
    assert customer_params["metadata"]["user_id"] == str(user.id)

    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["customer"] == "cus_new"
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro_yearly", "quantity": 1}]
    assert params["metadata"]["billing_cycle"] == "yearly"
    assert params["success_url"].startswith(
        "http://localhost:3000/dashboard/billing?checkout=success&session_id="
    )

    customer = await _customer(session_maker, user.id)
    assert customer.stripe_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_checkout_reuses_existing_customer(
    client, seed, session_maker, payments, price_env, stripe_client, user_headers
):
    user = await seed.user()
    async with session_maker() as s:
        s.add(StripeCustomer(user_id=user.id, stripe_customer_id="cus_existing"))
        await s.commit()

    resp = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "monthly"},
        headers=user_headers(user),
    )

    assert resp.status_code == 200
    stripe_client.customers.create.assert_not_called()
    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["customer"] == "cus_existing"


@pytest.mark.asyncio
async def test_existing_subscriber_gets_upgrade_flow(
    client, seed, session_maker, payments, price_env, stripe_client, user_headers
):
    await seed.plan("pro")
    user = await seed.user()
    await seed.license(user, "pro", stripe_subscription_id="sub_123")
    async with session_maker() as s:
        s.add(StripeCustomer(user_id=user.id, stripe_customer_id="cus_existing"))
        await s.commit()

    resp = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "yearly"},
        headers=user_headers(user),
    )

    assert resp.json() == {"checkout_url": "https://billing.stripe.test/p/session_123"}
    stripe_client.checkout.sessions.create.assert_not_called()
    stripe_client.subscriptions.retrieve.assert_called_once_with("sub_123")
    flow = stripe_client.billing_portal.sessions.create.call_args.kwargs["params"][
        "flow_data"
    ]
    assert flow["type"] == "subscription_update_confirm"
    assert flow["subscription_update_confirm"]["items"] == [
        {"id": "si_current", "price": "price_pro_yearly"}
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,error",
    [
        ({"plan_id": "pro", "billing_cycle": "weekly"}, "Invalid plan_id or billing_cycle"),
        ({"billing_cycle": "monthly"}, "Invalid plan_id or billing_cycle"),
        ({"plan_id": "free", "billing_cycle": "monthly"}, "Cannot checkout for free plan"),
        ({"plan_id": "enterprise", "billing_cycle": "monthly"}, "Cannot checkout for enterprise plan"),
        ({"plan_id": "platinum", "billing_cycle": "monthly"}, "Unknown plan"),
        ({"plan_id": "team", "billing_cycle": "monthly"}, "Stripe price not configured for team monthly"),
    ],
)
async def test_checkout_validation(client, seed, payments, price_env, user_headers, payload, error):
    user = await seed.user()

    resp = await client.post(CHECKOUT_URL, json=payload, headers=user_headers(user))

    assert resp.status_code == 400
    assert resp.json()["error"] == error


@pytest.mark.asyncio
async def test_checkout_without_secret_key_is_500(
    client, seed, payments, price_env, monkeypatch, user_headers
):
    monkeypatch.delenv("STRIPE_SECRET_KEY")
    user = await seed.user()

    resp = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "monthly"},
        headers=user_headers(user),
    )

    assert resp.status_code == 500
    assert "Stripe secret key not configured" in resp.json()["error"]


@pytest.mark.asyncio
async def test_database_price_overrides_environment(
    client, seed, payments, price_env, stripe_client, user_headers
):
    await seed.setting("stripe.price.pro.monthly", "price_from_panel")
    user = await seed.user()

    await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "monthly"},
        headers=user_headers(user),
    )

    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["line_items"][0]["price"] == "price_from_panel"


@pytest.mark.asyncio
async def test_stripe_failure_is_502_and_rolls_back_customer(
    client, seed, session_maker, payments, price_env, stripe_client, user_headers
):
    stripe_client.checkout.sessions.create.side_effect = StripeError("card_declined")
    user = await seed.user()

    resp = await client.post(
        CHECKOUT_URL,
        json={"plan_id": "pro", "billing_cycle": "monthly"},
        headers=user_headers(user),
    )

    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to create checkout session"}
    assert await _customer(session_maker, user.id) is None


# ---------------------------------------------------------------------------
# Portal
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_portal_without_customer_is_404(client, seed, payments, user_headers):
    user = await seed.user()

    resp = await client.post(PORTAL_URL, headers=user_headers(user))

    assert resp.status_code == 404
    assert resp.json()["error"] == "No billing account found. Start a subscription first."


@pytest.mark.asyncio
async def test_portal_session(client, seed, session_maker, payments, stripe_client, user_headers):
    user = await seed.user()
    async with session_maker() as s:
        s.add(StripeCustomer(user_id=user.id, stripe_customer_id="cus_existing"))
        await s.commit()

    resp = await client.post(PORTAL_URL, headers=user_headers(user))

    assert resp.status_code == 200
    assert resp.json() == {"portal_url": "https://billing.stripe.test/p/session_123"}
    stripe_client.billing_portal.sessions.create.assert_called_once_with(
        params={
            "customer": "cus_existing",
            "return_url": "http://localhost:3000/dashboard/billing",
        }
    )


@pytest.mark.asyncio
async def test_portal_stripe_failure_is_502(client, seed, session_maker, payments, stripe_client, user_headers):
    stripe_client.billing_portal.sessions.create.side_effect = StripeError("down")
    user = await seed.user()
    async with session_maker() as s:
        s.add(StripeCustomer(user_id=user.id, stripe_customer_id="cus_existing"))
        await s.commit()

    resp = await client.post(PORTAL_URL, headers=user_headers(user))

    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to create billing portal session"}
