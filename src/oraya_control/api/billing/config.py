"""Billing configuration getters.

Every value is resolved through the settings resolver: the ``billing`` rows
the superadmin panel writes to ``platform_settings`` first, the environment
second.
"""

from __future__ import annotations

from dataclasses import dataclass

from oraya_control.api.services.settings import SettingsResolver, get_settings_resolver

DEFAULT_APP_URL = "http://localhost:3000"

SUBSCRIPTION_PLANS = ("pro", "team", "enterprise")
BILLING_CYCLES = ("monthly", "yearly")


@dataclass(frozen=True)
class RedirectUrls:
    success_url: str
    cancel_url: str
    portal_return_url: str


def _resolver(resolver: SettingsResolver | None) -> SettingsResolver:
    return resolver or get_settings_resolver()


async def get_stripe_secret_key(resolver: SettingsResolver | None = None) -> str:
    return await _resolver(resolver).get("stripe.secret_key", "STRIPE_SECRET_KEY")


async def get_stripe_webhook_secret(resolver: SettingsResolver | None = None) -> str:
    return await _resolver(resolver).get(
        "stripe.webhook_secret", "STRIPE_WEBHOOK_SECRET"
    )


async def get_plan_price_ids(
    resolver: SettingsResolver | None = None,
) -> dict[str, dict[str, str]]:
    """Subscription price ids keyed by plan, then billing cycle."""
    resolver = _resolver(resolver)
    prices: dict[str, dict[str, str]] = {}
    for plan in SUBSCRIPTION_PLANS:
        prices[plan] = {}
        for cycle in BILLING_CYCLES:
            prices[plan][cycle] = await resolver.get(
                f"stripe.price.{plan}.{cycle}",
                f"STRIPE_PRICE_{plan.upper()}_{cycle.upper()}",
            )
    return prices


async def get_app_url(resolver: SettingsResolver | None = None) -> str:
    url = await _resolver(resolver).get("platform.app_url", "APP_URL")
    return (url or DEFAULT_APP_URL).rstrip("/")


async def get_redirect_urls(resolver: SettingsResolver | None = None) -> RedirectUrls:
    app_url = await get_app_url(resolver)
    return RedirectUrls(
        success_url=f"{app_url}/dashboard/billing?checkout=success",
        cancel_url=f"{app_url}/dashboard/billing?checkout=cancelled",
        portal_return_url=f"{app_url}/dashboard/billing",
    )
