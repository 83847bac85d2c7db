"""Stripe client factory for billing endpoints.

The secret key is resolved through the settings resolver on every call, so a
key rotated from the superadmin panel takes effect once the settings cache
turns over. The ``StripeClient`` is rebuilt only when the key changes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from stripe import StripeClient

from oraya_control.api.billing.config import get_stripe_secret_key
from oraya_control.api.errors import ConfigurationError
from oraya_control.api.services.settings import SettingsResolver, get_settings_resolver

logger = logging.getLogger(__name__)

MISSING_SECRET_KEY_MESSAGE = (
    "Stripe secret key not configured. Set it via Superadmin > Settings > "
    "Billing, or add STRIPE_SECRET_KEY to the environment."
)


class PaymentsClientFactory:
    """Builds and caches the ``StripeClient`` for the current secret key."""

    def __init__(
        self,
        resolver: SettingsResolver | None = None,
        client_factory: Callable[[str], Any] = StripeClient,
    ):
        self._resolver = resolver
        self._client_factory = client_factory
        self._client: Any = None
        self._client_key: str | None = None

    @property
    def resolver(self) -> SettingsResolver:
        return self._resolver or get_settings_resolver()

    async def get_client(self) -> StripeClient:
        """Return a client for the configured key.

        Raises ``ConfigurationError`` when no key is configured.
        """
        secret_key = await get_stripe_secret_key(self.resolver)
        if not secret_key:
            raise ConfigurationError(MISSING_SECRET_KEY_MESSAGE)

        if self._client is None or self._client_key != secret_key:
            if self._client is not None:
                logger.info("Stripe secret key changed, rebuilding client")
            self._client = self._client_factory(secret_key)
            self._client_key = secret_key
        return self._client

    def invalidate(self) -> None:
        self._client = None
        self._client_key = None


_payments_client_factory: PaymentsClientFactory | None = None


def get_payments_client_factory() -> PaymentsClientFactory:
    """Process-wide factory; also used as a FastAPI dependency."""
    global _payments_client_factory
    if _payments_client_factory is None:
        _payments_client_factory = PaymentsClientFactory()
    return _payments_client_factory


def reset_payments_client_factory() -> None:
    """Drop the process-wide factory. Intended for tests."""
    global _payments_client_factory
    _payments_client_factory = None
