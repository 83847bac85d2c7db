"""Platform settings model.

Global key-value configuration edited from the superadmin panel. Values are
JSON-encoded scalars stored as text; billing credentials live under the
``billing`` category and are read through the settings resolver.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Text

from oraya_control.models.base import Base, GUID


class SettingCategory(str, Enum):
    """Categories for grouping settings."""

    GENERAL = "general"
    BILLING = "billing"
    EMAIL = "email"
    AI = "ai"
    SECURITY = "security"


class PlatformSetting(Base):
    """Key-value platform setting.

    ``is_sensitive`` values are masked when listed.
    """

    __tablename__ = "platform_settings"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=True)
    category = Column(
        Text, default=SettingCategory.GENERAL.value, nullable=False, index=True
    )
    description = Column(Text, nullable=True)
    is_sensitive = Column(Boolean, default=False, nullable=False)
    updated_by = Column(GUID(), nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PlatformSetting {self.category}:{self.key}>"
