"""Setting service - runtime feature toggles stored in the settings table."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Setting

logger = logging.getLogger(__name__)

LOGIN_RATE_LIMIT_ENABLED = "login_rate_limit_enabled"


class SettingService:
    """Service for managing application settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Setting | None:
        """Get a setting by key."""
        result = await self.db.execute(select(Setting).where(Setting.key == key))
        return result.scalar_one_or_none()

    async def get_value(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        setting = await self.get(key)
        if not setting or setting.value is None:
            return default
        return setting.value

    async def set_value(
        self,
        key: str,
        value: str | None,
        description: str | None = None,
    ) -> Setting:
        """Set a setting value, creating if it doesn't exist."""
        setting = await self.get(key)

        if setting is None:
            setting = Setting(key=key, description=description)
            self.db.add(setting)

        setting.value = value

        await self.db.flush()
        await self.db.refresh(setting)
        return setting

    async def is_enabled(self, key: str, default: bool = True) -> bool:
        """Read a boolean feature toggle.

        Unrecognised values fall back to ``default`` so a typo in the admin
        panel cannot silently switch a protection off.
        """
        setting = await self.get(key)
        if setting is None or setting.value is None:
            return default
        parsed = setting.as_bool()
        if parsed is None:
            logger.warning(f"Unrecognised boolean for setting '{key}': {setting.value!r}")
            return default
        return parsed
