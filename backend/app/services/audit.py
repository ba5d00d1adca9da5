"""Security Audit Logging Service.

Records authentication and IP-blocking events. Writing is fire-and-forget:
``emit`` schedules the write on a background task and returns immediately,
and a failing sink is logged, never raised into the login or logout path.
"""

import asyncio
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("portfolio.audit")


class AuditAction(str, Enum):
    """Security audit action types."""

    # Authentication events
    LOGIN = "auth.login"
    LOGIN_FAILED = "auth.login_failed"
    LOGIN_BLOCKED = "auth.login_blocked"
    LOGIN_RATE_LIMITED = "auth.login_rate_limited"
    LOGOUT = "auth.logout"
    PASSWORD_CHANGE = "auth.password_change"
    PROFILE_UPDATE = "auth.profile_update"

    # IP blocking events
    IP_BLOCK = "security.ip_block"
    IP_AUTO_BLOCK = "security.ip_auto_block"
    IP_UNBLOCK = "security.ip_unblock"


class AuditSink(Protocol):
    """Destination for audit entries (the audit-log table, a SIEM, ...)."""

    async def write(self, entry: dict[str, Any]) -> None: ...


class LoggingAuditSink:
    """Writes audit entries to the ``portfolio.audit`` logger."""

    async def write(self, entry: dict[str, Any]) -> None:
        level = logging.WARNING if not entry.get("success", True) else logging.INFO
        audit_logger.log(level, entry["message"], extra={"audit": entry})


class AuditService:
    """Service for logging security audit events."""

    def __init__(self, sink: AuditSink | None = None):
        self._sink = sink or LoggingAuditSink()
        self._pending: set[asyncio.Task[None]] = set()

    def emit(
        self,
        action: AuditAction,
        message: str,
        *,
        success: bool = True,
        user_id: str | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Schedule an audit entry to be written in the background."""
        entry: dict[str, Any] = {
            "action": action.value,
            "message": message,
            "success": success,
            "user_id": user_id,
            "username": username,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if details:
            entry["details"] = self._sanitize_details(details)

        task = asyncio.create_task(self._write(entry), name=f"audit:{action.value}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: dict[str, Any]) -> None:
        try:
            await self._sink.write(entry)
        except Exception as e:
            logger.warning(f"Failed to write audit event {entry['action']}: {e}")

    async def drain(self) -> None:
        """Wait for scheduled writes to finish (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _sanitize_details(self, details: dict[str, Any]) -> dict[str, Any]:
        """Remove sensitive data from audit details.

        Redacts passwords, tokens, secrets.
        """
        sensitive_keys = {"password", "secret", "token"}

        sanitized = {}
        for key, value in details.items():
            key_lower = key.lower()
            if any(s in key_lower for s in sensitive_keys):
                # Mark as redacted but indicate if value was set/unset
                if value is not None:
                    sanitized[key] = "[REDACTED - set]"
                else:
                    sanitized[key] = "[REDACTED - unset]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_details(value)
            else:
                sanitized[key] = value

        return sanitized
