from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from oraya_control.api.billing.config import get_plan_price_ids, get_redirect_urls
from oraya_control.api.billing.stripe_client import (
    MISSING_SECRET_KEY_MESSAGE,
    PaymentsClientFactory,
)
from oraya_control.api.errors import ConfigurationError
from oraya_control.api.services.settings import SettingsResolver


def _resolver(values: dict[str, str]) -> SettingsResolver:
    async def loader() -> dict[str, str]:
        return dict(values)

    return SettingsResolver(loader=loader, ttl_seconds=3600)


@pytest.mark.asyncio
async def test_client_is_reused_while_key_is_unchanged():
    build = MagicMock(side_effect=lambda key: MagicMock(name=f"client-{key}"))
    factory = PaymentsClientFactory(
        resolver=_resolver({"stripe.secret_key": "sk_test_1"}), client_factory=build
    )

    first = await factory.get_client()
    second = await factory.get_client()

    assert first is second
    build.assert_called_once_with("sk_test_1")


@pytest.mark.asyncio
async def test_client_is_rebuilt_when_key_rotates():
    values = {"stripe.secret_key": "sk_test_1"}
    resolver = _resolver(values)
    build = MagicMock(side_effect=lambda key: MagicMock(name=f"client-{key}"))
    factory = PaymentsClientFactory(resolver=resolver, client_factory=build)

    first = await factory.get_client()
    values["stripe.secret_key"] = "sk_test_2"
    resolver.invalidate()
    second = await factory.get_client()

    assert first is not second
    assert [c.args[0] for c in build.call_args_list] == ["sk_test_1", "sk_test_2"]


@pytest.mark.asyncio
async def test_environment_key_is_used_when_database_is_empty(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_env")
    build = MagicMock()
    factory = PaymentsClientFactory(resolver=_resolver({}), client_factory=build)

    await factory.get_client()

    build.assert_called_once_with("sk_env")


@pytest.mark.asyncio
async def test_missing_key_raises_configuration_error():
    build = MagicMock()
    factory = PaymentsClientFactory(resolver=_resolver({}), client_factory=build)

    with pytest.raises(ConfigurationError) as exc_info:
        await factory.get_client()

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == MISSING_SECRET_KEY_MESSAGE
    build.assert_not_called()


@pytest.mark.asyncio
async def test_invalidate_drops_cached_client():
    build = MagicMock(side_effect=lambda key: MagicMock())
    factory = PaymentsClientFactory(
        resolver=_resolver({"stripe.secret_key": "sk_test_1"}), client_factory=build
    )

    await factory.get_client()
    factory.invalidate()
    await factory.get_client()

    assert build.call_count == 2


@pytest.mark.asyncio
async def test_price_ids_prefer_database_then_environment(monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_PRO_YEARLY", "price_env_yearly")
    resolver = _resolver({"stripe.price.pro.monthly": "price_db_monthly"})

    prices = await get_plan_price_ids(resolver)

    assert prices["pro"] == {
        "monthly": "price_db_monthly",
        "yearly": "price_env_yearly",
    }
    assert prices["team"] == {"monthly": "", "yearly": ""}


@pytest.mark.asyncio
async def test_redirect_urls_default_to_local_app():
    urls = await get_redirect_urls(_resolver({}))

    assert urls.success_url == "http://localhost:3000/dashboard/billing?checkout=success"
    assert urls.portal_return_url == "http://localhost:3000/dashboard/billing"


@pytest.mark.asyncio
async def test_redirect_urls_strip_trailing_slash():
    urls = await get_redirect_urls(_resolver({"platform.app_url": "https://oraya.dev/"}))

    assert urls.cancel_url == "https://oraya.dev/dashboard/billing?checkout=cancelled"
