"""Platform settings: the DB-first settings resolver and the admin settings service.

``SettingsResolver`` answers configuration lookups with this precedence:
non-empty database value, then the named environment variable, then ``""``.
Database values are cached as one immutable mapping for ``ttl_seconds``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oraya_control.api.utils.logging import sanitize_for_log
from oraya_control.models.settings import PlatformSetting, SettingCategory
from oraya_control.utils.datetime import isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

SettingsLoader = Callable[[], Awaitable[Mapping[str, str]]]

MASK_PLACEHOLDER = "***"


def encode_setting_value(value: Any) -> str:
    """Encode a setting value for storage (JSON text)."""
    return json.dumps(value)


def decode_setting_value(raw: Optional[str]) -> str:
    """Decode a stored setting value into the string handed to callers.

    Strings come back as-is, other JSON scalars are re-encoded (``true``,
    ``14``) and text that is not valid JSON is returned raw.
    """
    if raw is None:
        return ""
    try:
        decoded = json.loads(raw)
    except ValueError:
        return raw
    if decoded is None:
        return ""
    if isinstance(decoded, str):
        return decoded
    return json.dumps(decoded)


async def load_billing_settings() -> dict[str, str]:
    """Read every ``billing`` setting using a fresh database session."""
    from oraya_control.db import get_session

    async with get_session() as session:
        result = await session.execute(
            select(PlatformSetting.key, PlatformSetting.value).where(
                PlatformSetting.category == SettingCategory.BILLING.value
            )
        )
        return {key: decode_setting_value(value) for key, value in result.all()}


class SettingsResolver:
    """TTL-cached, DB-first configuration lookups.

    The cache is replaced wholesale on every successful load. A failed load
    keeps the previous mapping (or an empty one) and leaves the cache stale,
    so the next lookup tries again.
    """

    def __init__(
        self,
        loader: SettingsLoader | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader or load_billing_settings
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._values: Mapping[str, str] = MappingProxyType({})
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    async def _ensure_loaded(self) -> None:
        if self._is_fresh():
            return
        async with self._lock:
            if self._is_fresh():
                return
            try:
                values = await self._loader()
            except Exception as exc:
                logger.warning(
                    "Failed to load platform settings, keeping %d cached values: %s",
                    len(self._values),
                    sanitize_for_log(str(exc)),
                )
                return
            self._values = MappingProxyType(dict(values))
            self._loaded_at = self._clock()
            logger.debug("Loaded %d platform settings", len(self._values))

    async def get(self, key: str, env_var: str | None = None) -> str:
        """Resolve ``key``: database value, then ``env_var``, then ``""``."""
        await self._ensure_loaded()
        value = self._values.get(key)
        if value:
            return value
        if env_var:
            env_value = os.getenv(env_var)
            if env_value:
                return env_value
        return ""

    async def snapshot(self) -> Mapping[str, str]:
        """Current cached mapping, loading it first if stale."""
        await self._ensure_loaded()
        return self._values

    def invalidate(self) -> None:
        """Force the next lookup to reload from the database."""
        self._loaded_at = None

    @property
    def loaded_at(self) -> float | None:
        return self._loaded_at


_settings_resolver: SettingsResolver | None = None


def get_settings_resolver() -> SettingsResolver:
    """Process-wide resolver; also used as a FastAPI dependency."""
    global _settings_resolver
    if _settings_resolver is None:
        _settings_resolver = SettingsResolver()
    return _settings_resolver


def reset_settings_resolver() -> None:
    """Drop the process-wide resolver. Intended for tests."""
    global _settings_resolver
    _settings_resolver = None


def mask_value(value: str) -> str:
    """Mask a sensitive value as ``sk_live...abcd``."""
    if len(value) > 8:
        return value[:7] + "..." + value[-4:]
    return MASK_PLACEHOLDER


def is_masked_placeholder(value: Any) -> bool:
    """True for values the panel echoes back unchanged from a masked listing."""
    text = value if isinstance(value, str) else json.dumps(value)
    return text == MASK_PLACEHOLDER or ("..." in text and len(text) < 20)


class PlatformSettingsService:
    """Admin-side listing and bulk upsert of platform settings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_settings(self, category: Optional[str] = None) -> list[dict[str, Any]]:
        stmt = select(PlatformSetting).order_by(PlatformSetting.key.asc())
        if category:
            stmt = stmt.where(PlatformSetting.category == category)
        result = await self.session.execute(stmt)

        rows = []
        for setting in result.scalars().all():
            value = decode_setting_value(setting.value)
            has_value = bool(value)
            if setting.is_sensitive and value:
                value = mask_value(value)
            rows.append(
                {
                    "key": setting.key,
                    "value": value,
                    "category": setting.category,
                    "description": setting.description,
                    "is_sensitive": setting.is_sensitive,
                    "has_value": has_value,
                    "updated_at": isoformat_or_none(setting.updated_at),
                }
            )
        return rows

    async def upsert(
        self,
        key: str,
        value: Any,
        category: Optional[str] = None,
        description: Optional[str] = None,
        is_sensitive: bool = False,
        updated_by: Optional[uuid.UUID] = None,
    ) -> PlatformSetting:
        setting = await self.session.get(PlatformSetting, key)
        if setting is None:
            setting = PlatformSetting(key=key)
            self.session.add(setting)
        setting.value = encode_setting_value(value)
        setting.category = category or SettingCategory.GENERAL.value
        setting.description = description
        setting.is_sensitive = is_sensitive
        setting.updated_by = updated_by
        setting.updated_at = utc_now()
        await self.session.flush()
        return setting

    async def bulk_upsert(
        self, items: list[dict[str, Any]], updated_by: Optional[uuid.UUID] = None
    ) -> list[dict[str, str]]:
        """Upsert each item, skipping masked placeholders and incomplete items.

        Returns ``[{"key", "status"}]`` in input order.
        """
        results: list[dict[str, str]] = []
        for item in items:
            key = item.get("key")
            if not key or "value" not in item or item.get("value") is None:
                results.append(
                    {"key": key or "unknown", "status": "skipped: missing key or value"}
                )
                continue

            if is_masked_placeholder(item["value"]):
                results.append({"key": key, "status": "unchanged (masked)"})
                continue

            await self.upsert(
                key,
                item["value"],
                category=item.get("category"),
                description=item.get("description"),
                is_sensitive=bool(item.get("is_sensitive", False)),
                updated_by=updated_by,
            )
            results.append({"key": key, "status": "saved"})
        logger.info(
            "Saved %d of %d platform settings",
            sum(1 for r in results if r["status"] == "saved"),
            len(results),
        )
        return results
