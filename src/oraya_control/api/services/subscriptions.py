"""Keeps user licenses in step with payments-provider subscriptions.

Webhook payloads arrive as Stripe objects, which behave like dicts; every
field is read with ``.get`` so plain dicts work as well.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.services.users import DEFAULT_PLAN_ID, UserService
from oraya_control.licensing import PlanEnforcer
from oraya_control.models.licensing import (
    BillingCycle,
    License,
    LicenseStatus,
    StripeCustomer,
)
from oraya_control.models.users import User
from oraya_control.utils.datetime import utc_now

logger = logging.getLogger(__name__)

# Plan assumed when a subscription carries no plan metadata
DEFAULT_SUBSCRIPTION_PLAN = "pro"

# Invoice billing reason that starts a new usage period
RENEWAL_BILLING_REASON = "subscription_cycle"

SUBSCRIPTION_STATUS_MAP = {
    "active": LicenseStatus.ACTIVE,
    "trialing": LicenseStatus.ACTIVE,
    "past_due": LicenseStatus.PAYMENT_FAILED,
    "unpaid": LicenseStatus.PAYMENT_FAILED,
    "incomplete": LicenseStatus.PAYMENT_FAILED,
    "canceled": LicenseStatus.CANCELLED,
    "incomplete_expired": LicenseStatus.EXPIRED,
    "paused": LicenseStatus.SUSPENDED,
}


def map_subscription_status(status: str | None) -> str:
    return SUBSCRIPTION_STATUS_MAP.get(status or "", LicenseStatus.ACTIVE).value


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = subscription.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def _object_id(value: Any) -> str | None:
    """Expanded Stripe references are objects, collapsed ones are ids."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


class SubscriptionService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve_user_id(
        self, metadata: Mapping[str, Any], customer_id: str | None
    ) -> uuid.UUID | None:
        """User from subscription metadata, else from the customer mapping."""
        raw = metadata.get("user_id")
        if raw:
            try:
                user = await self.session.get(User, uuid.UUID(str(raw)))
            except ValueError:
                logger.warning("Subscription metadata has a malformed user_id")
            else:
                if user is not None:
                    return user.id
        if not customer_id:
            return None
        result = await self.session.execute(
            select(StripeCustomer.user_id).where(
                StripeCustomer.stripe_customer_id == customer_id
            )
        )
        return result.scalar_one_or_none()

    async def license_for_subscription(
        self, subscription_id: str | None
    ) -> License | None:
        if not subscription_id:
            return None
        result = await self.session.execute(
            select(License)
            .where(License.stripe_subscription_id == subscription_id)
            .order_by(License.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def apply_subscription(
        self, subscription: Mapping[str, Any]
    ) -> License | None:
        """Create or move the user's license to match a subscription."""
        metadata = subscription.get("metadata") or {}
        user_id = await self.resolve_user_id(
            metadata, _object_id(subscription.get("customer"))
        )
        if user_id is None:
            logger.error(
                "Subscription %s event but cannot identify user", subscription.get("id")
            )
            return None

        plan_id = metadata.get("plan_id") or DEFAULT_SUBSCRIPTION_PLAN
        if await PlanEnforcer(self.session).get_plan(plan_id) is None:
            logger.error(
                "Subscription %s references unknown plan %s",
                subscription.get("id"),
                plan_id,
            )
            return None

        billing_cycle = metadata.get("billing_cycle")
        if billing_cycle not in (BillingCycle.MONTHLY.value, BillingCycle.YEARLY.value):
            billing_cycle = BillingCycle.MONTHLY.value

        assignment = await UserService(self.session).assign_license(
            user_id,
            plan_id,
            map_subscription_status(subscription.get("status")),
            billing_cycle,
        )
        license_row = assignment.license
        item = _first_item(subscription)
        license_row.stripe_subscription_id = subscription.get("id")
        license_row.is_trial = subscription.get("status") == "trialing"
        license_row.current_period_start = (
            _timestamp(item.get("current_period_start")) or utc_now()
        )
        license_row.current_period_end = _timestamp(item.get("current_period_end"))
        if assignment.created or assignment.replaced:
            price = item.get("price") or {}
            license_row.amount_paid = (price.get("unit_amount") or 0) / 100
        license_row.updated_at = utc_now()
        await self.session.flush()

        logger.info(
            "License %s synced to subscription %s (plan=%s status=%s)",
            license_row.id,
            subscription.get("id"),
            plan_id,
            license_row.status,
        )
        return license_row

    async def cancel_subscription(self, subscription: Mapping[str, Any]) -> None:
        """Cancel the subscription's license and fall back to the free plan."""
        license_row = await self.license_for_subscription(subscription.get("id"))
        user_id: uuid.UUID | None
        if license_row is not None:
            license_row.status = LicenseStatus.CANCELLED.value
            license_row.updated_at = utc_now()
            user_id = license_row.user_id
        else:
            user_id = await self.resolve_user_id(
                subscription.get("metadata") or {},
                _object_id(subscription.get("customer")),
            )
        await self.session.flush()

        if user_id is None:
            logger.warning(
                "Subscription %s deleted but no license or user found",
                subscription.get("id"),
            )
            return
        await self.ensure_free_license(user_id)

    async def ensure_free_license(self, user_id: uuid.UUID) -> License | None:
        enforcer = PlanEnforcer(self.session)
        if await enforcer.get_user_license(user_id) is not None:
            return None
        if await enforcer.get_plan(DEFAULT_PLAN_ID) is None:
            logger.warning(
                "No %s plan configured, user %s left without a license",
                DEFAULT_PLAN_ID,
                user_id,
            )
            return None

        result = await self.session.execute(
            select(License).where(
                License.user_id == user_id, License.plan_id == DEFAULT_PLAN_ID
            )
        )
        free = result.scalar_one_or_none()
        if free is not None:
            free.status = LicenseStatus.ACTIVE.value
            free.updated_at = utc_now()
            await self.session.flush()
            return free
        return await UserService(self.session).create_license(
            user_id, DEFAULT_PLAN_ID, LicenseStatus.ACTIVE.value
        )

    async def record_invoice_paid(self, invoice: Mapping[str, Any]) -> None:
        license_row = await self.license_for_subscription(
            _object_id(invoice.get("subscription"))
        )
        if license_row is None:
            return
        if license_row.status == LicenseStatus.PAYMENT_FAILED.value:
            license_row.status = LicenseStatus.ACTIVE.value
            license_row.updated_at = utc_now()
            await self.session.flush()
        if invoice.get("billing_reason") == RENEWAL_BILLING_REASON:
            await PlanEnforcer(self.session).reset_monthly_usage(license_row.id)
            logger.info("Usage reset for license %s on renewal", license_row.id)

    async def record_payment_failed(self, invoice: Mapping[str, Any]) -> None:
        license_row = await self.license_for_subscription(
            _object_id(invoice.get("subscription"))
        )
        if license_row is None:
            logger.warning(
                "Payment failed for customer %s without a known subscription",
                _object_id(invoice.get("customer")),
            )
            return
        license_row.status = LicenseStatus.PAYMENT_FAILED.value
        license_row.updated_at = utc_now()
        await self.session.flush()
