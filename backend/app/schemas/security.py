"""Pydantic schemas for the admin IP-blocking API."""

import ipaddress
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from app.services.block_store import BlockRecord


class BlockIpRequest(BaseModel):
    """Request to block an IP address manually."""

    ip: str = Field(..., description="IPv4 or IPv6 address to block")
    reason: str = Field(..., min_length=1, max_length=500)
    permanent: bool = Field(default=False, description="Ignore the configured block duration")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        try:
            return str(ipaddress.ip_address(v.strip()))
        except ValueError as e:
            raise ValueError("Invalid IP address format") from e


class BlockedIpResponse(BaseModel):
    """A single block record."""

    ip: str
    reason: str
    blocked_at: datetime
    expires_at: datetime | None
    attempt_count: int
    is_permanent: bool
    is_active: bool

    @classmethod
    def from_record(cls, record: BlockRecord, now: datetime) -> "BlockedIpResponse":
        return cls(
            ip=record.ip,
            reason=record.reason,
            blocked_at=record.blocked_at,
            expires_at=record.expires_at,
            attempt_count=record.attempt_count,
            is_permanent=record.permanent,
            is_active=record.is_active(now),
        )


class BlockedIpListResponse(BaseModel):
    """Paginated list of block records."""

    items: list[BlockedIpResponse]
    total: int
    page: int
    limit: int
    pages: int


BlockStatusFilter = Literal["active", "expired"]


class SecurityStatsResponse(BaseModel):
    """Aggregate counts for the admin security dashboard."""

    total_blocked_ips: int
    active_blocks: int
    permanent_blocks: int
    temporary_blocks: int
    recent_blocks_24h: int
    last_updated: datetime
