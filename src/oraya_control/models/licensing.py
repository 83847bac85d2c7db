"""Plans, licenses, device activations and payment customers.

This module defines the models for:
- Plans: The subscription catalogue with per-plan limits and feature lists
- User Licenses: A user's subscription to a plan plus monthly usage counters
- Device Activations: Desktop installs bound to a license
- Stripe Customers: Mapping from users to payments-provider customer ids

Limits of ``-1`` or null mean unlimited.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)

from oraya_control.models.base import Base, GUID

# Feature id that grants every feature
EVERYTHING_FEATURE = "everything"


def generate_license_key() -> str:
    return "ORA-" + secrets.token_hex(8).upper()


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    TRIAL = "trial"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    PAYMENT_FAILED = "payment_failed"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class QuotaType(str, Enum):
    """Monthly quotas tracked on the license."""

    AI_CALLS = "ai_calls"
    CONVERSATIONS = "conversations"
    TOKENS = "tokens"


# quota -> (license usage column, plan limit column)
QUOTA_COLUMNS = {
    QuotaType.AI_CALLS: ("ai_calls_used", "max_ai_calls_per_month"),
    QuotaType.CONVERSATIONS: ("conversations_created", "max_conversations_per_month"),
    QuotaType.TOKENS: ("tokens_used", "max_token_usage_per_month"),
}


class Plan(Base):
    """Subscription plan.

    ``id`` is a lowercase slug (``free``, ``pro``, ``team``). ``features`` is a
    list of feature ids; ``everything`` grants all features. Plans with
    ``requires_organization`` may only be assigned to users who belong to an
    active team.
    """

    __tablename__ = "plans"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    price_monthly = Column(Float, default=0, nullable=False)
    price_yearly = Column(Float, default=0, nullable=False)
    currency = Column(Text, default="usd", nullable=False)

    max_agents = Column(Integer, nullable=True)
    max_devices = Column(Integer, nullable=True)
    max_conversations_per_month = Column(Integer, nullable=True)
    max_ai_calls_per_month = Column(Integer, nullable=True)
    max_token_usage_per_month = Column(Integer, nullable=True)

    features = Column(JSON, default=list, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_public = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    badge = Column(Text, nullable=True)
    requires_organization = Column(Boolean, default=False, nullable=False)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def includes_feature(self, feature_key: str) -> bool:
        features = self.features or []
        return EVERYTHING_FEATURE in features or feature_key in features

    def __repr__(self) -> str:
        return f"<Plan {self.id}>"


class License(Base):
    """A user's license for a plan.

    A user is meant to hold a single license row; (user_id, plan_id) is unique.
    """

    __tablename__ = "user_licenses"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(Text, ForeignKey("plans.id"), nullable=False)
    license_key = Column(
        Text, nullable=False, unique=True, default=generate_license_key
    )
    status = Column(Text, default=LicenseStatus.ACTIVE.value, nullable=False)
    billing_cycle = Column(Text, default=BillingCycle.MONTHLY.value, nullable=False)
    is_trial = Column(Boolean, default=False, nullable=False)

    # Monthly usage counters
    ai_calls_used = Column(Integer, default=0, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)
    conversations_created = Column(Integer, default=0, nullable=False)
    usage_limit_reached = Column(Boolean, default=False, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    amount_paid = Column(Float, default=0, nullable=False)
    stripe_subscription_id = Column(Text, nullable=True)

    activated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "plan_id", name="uq_user_license_plan"),
        Index("ix_user_licenses_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<License {self.user_id} plan={self.plan_id} {self.status}>"


class DeviceActivation(Base):
    """A desktop device activated against a license."""

    __tablename__ = "device_activations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    license_id = Column(
        GUID(),
        ForeignKey("user_licenses.id", ondelete="CASCADE"),
        nullable=True,
    )
    device_id = Column(Text, nullable=False)
    device_name = Column(Text, nullable=True)
    device_platform = Column(Text, nullable=True)
    app_version = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_device_activation"),
    )


class StripeCustomer(Base):
    """Payments-provider customer record for a user."""

    __tablename__ = "stripe_customers"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        GUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    stripe_customer_id = Column(Text, nullable=False, unique=True)
    email = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
