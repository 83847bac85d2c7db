"""Billing endpoints: checkout, the billing portal and Stripe webhooks."""

from __future__ import annotations

import logging
import uuid
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from stripe import SignatureVerificationError, StripeError

from oraya_control.api.admin.deps import get_session
from oraya_control.api.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from oraya_control.api.services.auth import extract_token_from_header, get_auth_service
from oraya_control.api.services.subscriptions import SubscriptionService
from oraya_control.licensing import PlanEnforcer
from oraya_control.models.licensing import StripeCustomer
from oraya_control.models.users import User

from .config import (
    BILLING_CYCLES,
    get_plan_price_ids,
    get_redirect_urls,
    get_stripe_webhook_secret,
)
from .stripe_client import PaymentsClientFactory, get_payments_client_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["billing"])

# Plans that are never sold through self-serve checkout
NON_CHECKOUT_PLANS = ("free", "enterprise")


class CheckoutRequest(BaseModel):
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str


async def get_current_user(
    authorization: Annotated[Optional[str], Header()] = None,
    session: AsyncSession = Depends(get_session),
) -> User:
    token = extract_token_from_header(authorization)
    if not token:
        raise AuthenticationError("Unauthorized")
    user_session = get_auth_service().get_user_session(token)
    if user_session is None:
        raise AuthenticationError("Unauthorized")
    try:
        user = await session.get(User, uuid.UUID(user_session.user_id))
    except ValueError:
        user = None
    if user is None:
        raise AuthenticationError("Unauthorized")
    return user


async def _get_customer_id(session: AsyncSession, user_id: uuid.UUID) -> str | None:
    result = await session.execute(
        select(StripeCustomer.stripe_customer_id).where(
            StripeCustomer.user_id == user_id
        )
    )
    return result.scalar_one_or_none()


def _ensure_customer(
    client: Any, user: User, plan_id: str, existing: str | None
) -> tuple[str, bool]:
    if existing:
        return existing, False
    customer = client.customers.create(
        params={
            "email": user.email,
            "name": user.full_name or None,
            "metadata": {"user_id": str(user.id), "plan_id": plan_id},
        }
    )
    return customer.id, True


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: Annotated[User, Depends(get_current_user)],
    session: AsyncSession = Depends(get_session),
    payments: PaymentsClientFactory = Depends(get_payments_client_factory),
) -> CheckoutResponse:
    """Start a subscription checkout, or an upgrade flow for existing subscribers."""
    plan_id, cycle = body.plan_id, body.billing_cycle
    if not plan_id or cycle not in BILLING_CYCLES:
        raise ValidationError("Invalid plan_id or billing_cycle")
    if plan_id in NON_CHECKOUT_PLANS:
        raise ValidationError(f"Cannot checkout for {plan_id} plan")

    price_ids = await get_plan_price_ids()
    if plan_id not in price_ids:
        raise ValidationError("Unknown plan")
    price_id = price_ids[plan_id].get(cycle)
    if not price_id:
        raise ValidationError(f"Stripe price not configured for {plan_id} {cycle}")

    client = await payments.get_client()
    urls = await get_redirect_urls()
    existing_customer = await _get_customer_id(session, user.id)
    active_license = await PlanEnforcer(session).get_user_license(user.id)

    try:
        customer_id, created = _ensure_customer(
            client, user, plan_id, existing_customer
        )
        if created:
            session.add(
                StripeCustomer(
                    user_id=user.id,
                    stripe_customer_id=customer_id,
                    email=user.email,
                )
            )
            await session.flush()

        if active_license is not None and active_license.stripe_subscription_id:
            subscription_id = active_license.stripe_subscription_id
            subscription = client.subscriptions.retrieve(subscription_id)
            portal_session = client.billing_portal.sessions.create(
                params={
                    "customer": customer_id,
                    "return_url": urls.success_url,
                    "flow_data": {
                        "type": "subscription_update_confirm",
                        "subscription_update_confirm": {
                            "subscription": subscription_id,
                            "items": [
                                {
                                    "id": subscription["items"]["data"][0]["id"],
                                    "price": price_id,
                                }
                            ],
                        },
                    },
                }
            )
            return CheckoutResponse(checkout_url=portal_session.url or "")

        metadata = {
            "user_id": str(user.id),
            "plan_id": plan_id,
            "billing_cycle": cycle,
        }
        checkout_session = client.checkout.sessions.create(
            params={
                "customer": customer_id,
                "mode": "subscription",
                "payment_method_types": ["card"],
                "line_items": [{"price": price_id, "quantity": 1}],
                "subscription_data": {"metadata": metadata},
                "metadata": {**metadata, "type": "subscription"},
                "success_url": urls.success_url + "&session_id={CHECKOUT_SESSION_ID}",
                "cancel_url": urls.cancel_url,
                "allow_promotion_codes": True,
                "billing_address_collection": "auto",
                "tax_id_collection": {"enabled": True},
            }
        )
    except StripeError:
        logger.exception("Failed to create Stripe checkout session")
        raise PaymentProviderError("Failed to create checkout session")

    return CheckoutResponse(checkout_url=checkout_session.url or "")


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    user: Annotated[User, Depends(get_current_user)],
    session: AsyncSession = Depends(get_session),
    payments: PaymentsClientFactory = Depends(get_payments_client_factory),
) -> PortalResponse:
    customer_id = await _get_customer_id(session, user.id)
    if not customer_id:
        raise NotFoundError("No billing account found. Start a subscription first.")

    client = await payments.get_client()
    urls = await get_redirect_urls()
    try:
        portal_session = client.billing_portal.sessions.create(
            params={"customer": customer_id, "return_url": urls.portal_return_url}
        )
    except StripeError:
        logger.exception("Failed to create Stripe portal session")
        raise PaymentProviderError("Failed to create billing portal session")

    return PortalResponse(portal_url=portal_session.url or "")


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    stripe_signature: Annotated[Optional[str], Header()] = None,
    session: AsyncSession = Depends(get_session),
    payments: PaymentsClientFactory = Depends(get_payments_client_factory),
) -> dict[str, Any]:
    """Verify the Stripe signature and sync licenses from subscription events."""
    if not stripe_signature:
        raise ValidationError("Missing Stripe signature")
    webhook_secret = await get_stripe_webhook_secret()
    if not webhook_secret:
        raise ConfigurationError("Webhook secret not configured")

    payload = await request.body()
    client = await payments.get_client()
    try:
        event = client.construct_event(payload, stripe_signature, webhook_secret)
    except (SignatureVerificationError, ValueError) as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise ValidationError("Invalid Stripe signature")

    event_type: str = event.type
    data_object = event.data.object
    subscriptions = SubscriptionService(session)

    if event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
    ):
        await subscriptions.apply_subscription(data_object)
    elif event_type == "customer.subscription.deleted":
        await subscriptions.cancel_subscription(data_object)
    elif event_type == "invoice.paid":
        await subscriptions.record_invoice_paid(data_object)
    elif event_type == "invoice.payment_failed":
        await subscriptions.record_payment_failed(data_object)
    else:
        logger.debug("Unhandled Stripe event: %s", event_type)

    return {"received": True}
