"""Runtime feature toggles editable from the admin panel."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off"})


class Setting(BaseModel):
    """One named toggle such as ``login_rate_limit_enabled``.

    Values are stored as text; ``as_bool`` interprets them.
    """

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False, comment="Setting key (unique identifier)"
    )
    value: Mapped[str | None] = mapped_column(Text, nullable=True, comment="Setting value")
    description: Mapped[str | None] = mapped_column(
        String(500), nullable=True, comment="Human-readable description of this setting"
    )

    def as_bool(self) -> bool | None:
        """Parse the value as a toggle; None if unset or not a recognised boolean."""
        if self.value is None:
            return None
        normalized = self.value.strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        return None

    def __repr__(self) -> str:
        return f"<Setting {self.key}={self.value!r}>"
