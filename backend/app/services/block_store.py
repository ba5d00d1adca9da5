"""IP block records kept in the shared counter store.

A block record lives under ``blocked_ip:<ip>``; temporary blocks carry a
store-side TTL and vanish on their own. Every write also maintains the
``blocked_ips`` index set in the same transaction so admins can enumerate
blocks. Index members whose record has expired are pruned lazily the next
time the list is read.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.counter_store import Clock, CounterStore, CounterStoreError

logger = logging.getLogger(__name__)

BLOCKED_IP_PREFIX = "blocked_ip:"
BLOCKED_IP_INDEX = "blocked_ips"
IP_ATTEMPTS_PREFIX = "auth_rate_limit:ip:"


def blocked_ip_key(ip: str) -> str:
    return f"{BLOCKED_IP_PREFIX}{ip}"


def ip_attempts_key(ip: str) -> str:
    return f"{IP_ATTEMPTS_PREFIX}{ip}"


@dataclass(frozen=True)
class BlockRecord:
    """A decision that ``ip`` may not attempt authentication."""

    ip: str
    reason: str
    blocked_at: datetime
    attempt_count: int
    expires_at: datetime | None = None

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at

    def to_json(self) -> str:
        data: dict[str, Any] = asdict(self)
        data["blocked_at"] = self.blocked_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "BlockRecord":
        data = json.loads(raw)
        expires_at = data.get("expires_at")
        return cls(
            ip=data["ip"],
            reason=data["reason"],
            blocked_at=datetime.fromisoformat(data["blocked_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


class BlockStore:
    """Manual and automatic IP blocks with optional expiry."""

    def __init__(
        self,
        store: CounterStore,
        block_duration_seconds: int,
        clock: Clock = time.time,
    ):
        self._store = store
        self._clock = clock
        self.block_duration_seconds = block_duration_seconds

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    async def block(self, ip: str, reason: str, permanent: bool = False) -> BlockRecord:
        """Write a block record for ``ip``, replacing any existing one."""
        try:
            attempt_count = await self._store.count(ip_attempts_key(ip))
        except CounterStoreError as e:
            logger.warning(f"Could not read attempt count for {ip} while blocking: {e}")
            attempt_count = 0

        now = self._now()
        is_permanent = permanent or self.block_duration_seconds == 0
        record = BlockRecord(
            ip=ip,
            reason=reason,
            blocked_at=now,
            attempt_count=attempt_count,
            expires_at=None if is_permanent else now + timedelta(seconds=self.block_duration_seconds),
        )

        await self._store.put(
            blocked_ip_key(ip),
            record.to_json(),
            ttl=None if is_permanent else self.block_duration_seconds,
            index=BLOCKED_IP_INDEX,
            member=ip,
        )

        logger.warning(
            f"IP {ip} blocked. Reason: {reason}. Attempts: {attempt_count}. "
            f"Permanent: {is_permanent}"
        )
        return record

    async def unblock(self, ip: str) -> None:
        """Remove any block on ``ip``. A no-op if none exists."""
        await self._store.remove(blocked_ip_key(ip), index=BLOCKED_IP_INDEX, member=ip)
        logger.info(f"IP {ip} unblocked")

    async def is_blocked(self, ip: str) -> bool:
        return await self._store.exists(blocked_ip_key(ip))

    async def get(self, ip: str) -> BlockRecord | None:
        """Return the active block record for ``ip``, if any."""
        raw = await self._store.get(blocked_ip_key(ip))
        if raw is None:
            return None
        try:
            return BlockRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            # Still blocked: the key exists. Report what we can.
            logger.error(f"Unreadable block record for {ip}: {e}")
            return BlockRecord(ip=ip, reason="unknown", blocked_at=self._now(), attempt_count=0)

    async def list_blocked(self) -> list[BlockRecord]:
        """Return all block records, newest first."""
        ips = sorted(await self._store.members(BLOCKED_IP_INDEX))
        if not ips:
            return []

        raw_records = await self._store.get_many([blocked_ip_key(ip) for ip in ips])
        records: list[BlockRecord] = []
        stale: list[str] = []
        for ip, raw in zip(ips, raw_records, strict=True):
            if raw is None:
                stale.append(ip)
                continue
            try:
                records.append(BlockRecord.from_json(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping unreadable block record for {ip}: {e}")

        if stale:
            await self._store.discard(BLOCKED_IP_INDEX, *stale)
            logger.debug(f"Pruned {len(stale)} expired entries from the block index")

        records.sort(key=lambda r: r.blocked_at, reverse=True)
        return records

    async def stats(self) -> dict[str, Any]:
        """Summarise current blocks for the admin dashboard."""
        records = await self.list_blocked()
        now = self._now()
        day_ago = now - timedelta(hours=24)
        return {
            "total_blocked_ips": len(records),
            "active_blocks": sum(1 for r in records if r.is_active(now)),
            "permanent_blocks": sum(1 for r in records if r.permanent),
            "temporary_blocks": sum(1 for r in records if not r.permanent),
            "recent_blocks_24h": sum(1 for r in records if r.blocked_at > day_ago),
            "last_updated": now,
        }
