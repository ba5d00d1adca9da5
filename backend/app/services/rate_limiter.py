"""Sliding-window login rate limiting on two axes, with automatic IP blocking.

Failed attempts are stored as scored members of one sorted set per axis:

- ``auth_rate_limit:ip:<ip>``: short window, high ceiling (scripted abuse
  from one address).
- ``auth_rate_limit:user:<username>``: long window, low ceiling (credential
  stuffing against one account from many addresses).

Entries older than the axis window are pruned lazily on every check. The
window is half-open, (now - window, now]: an attempt scored exactly
``window`` seconds ago is pruned and no longer counts.

Counts are approximate under concurrency. Prune, count and decide are
separate store round trips, so two requests racing for the same key can both
see a count just under the limit and both be let through. That overshoot is
bounded by the number of in-flight requests and is accepted: the goal is to
make brute force expensive, not to provide exact admission control.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.core.config import Settings
from app.core.counter_store import Clock, CounterStore
from app.services.block_store import BlockRecord, BlockStore, ip_attempts_key

logger = logging.getLogger(__name__)

USER_ATTEMPTS_PREFIX = "auth_rate_limit:user:"

BLOCKED_REASON = "IP address is blocked due to suspicious activity"


def user_attempts_key(username: str) -> str:
    return f"{USER_ATTEMPTS_PREFIX}{username}"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for both axes and the auto-block policy."""

    ip_limit: int = 20
    ip_window_seconds: int = 300
    user_limit: int = 5
    user_window_seconds: int = 900
    block_threshold: int = 5
    block_duration_seconds: int = 24 * 60 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        return cls(
            ip_limit=settings.auth_ip_limit,
            ip_window_seconds=settings.auth_ip_window_seconds,
            user_limit=settings.auth_user_limit,
            user_window_seconds=settings.auth_user_window_seconds,
            block_threshold=settings.ip_block_threshold,
            block_duration_seconds=settings.ip_block_duration_seconds,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single rate-limit check. Never persisted."""

    allowed: bool
    remaining_attempts: int
    reset_time: datetime
    lockout_seconds: int | None = None
    reason: str | None = None
    is_permanently_blocked: bool = False
    block: BlockRecord | None = None


class AutoBlockPolicy:
    """Blocks an IP once its failure count reaches the threshold."""

    def __init__(self, limiter: "SlidingWindowLimiter", blocks: BlockStore, threshold: int):
        self._limiter = limiter
        self._blocks = blocks
        self.threshold = threshold

    async def evaluate(self, ip: str) -> BlockRecord | None:
        """Block ``ip`` if it has crossed the threshold. Returns the new record."""
        attempt_count = await self._limiter.attempt_count(ip)
        if attempt_count < self.threshold:
            return None
        reason = f"Auto-blocked after {attempt_count} failed login attempts"
        return await self._blocks.block(ip, reason, permanent=False)


class SlidingWindowLimiter:
    """Per-IP and per-username attempt counters over rolling windows."""

    def __init__(
        self,
        store: CounterStore,
        blocks: BlockStore,
        config: RateLimitConfig,
        clock: Clock = time.time,
    ):
        self._store = store
        self._blocks = blocks
        self._clock = clock
        self.config = config
        self.auto_block = AutoBlockPolicy(self, blocks, config.block_threshold)

    async def _window_count(self, key: str, window_seconds: int, now: float) -> int:
        await self._store.prune(key, now - window_seconds)
        return await self._store.count(key)

    async def attempt_count(self, ip: str) -> int:
        """Current failures recorded for ``ip`` inside its window."""
        return await self._window_count(ip_attempts_key(ip), self.config.ip_window_seconds, self._clock())

    async def check(self, ip: str, username: str | None = None) -> RateLimitDecision:
        """Decide whether a login attempt from ``ip`` (for ``username``) may proceed."""
        cfg = self.config

        record = await self._blocks.get(ip)
        if record is not None:
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_time=datetime.fromtimestamp(self._clock(), tz=UTC),
                reason=BLOCKED_REASON,
                is_permanently_blocked=record.permanent,
                block=record,
            )

        now = self._clock()
        ip_count = await self._window_count(ip_attempts_key(ip), cfg.ip_window_seconds, now)
        user_count = 0
        if username:
            user_count = await self._window_count(
                user_attempts_key(username), cfg.user_window_seconds, now
            )

        ip_exceeded = ip_count >= cfg.ip_limit
        user_exceeded = user_count >= cfg.user_limit
        now_dt = datetime.fromtimestamp(now, tz=UTC)

        if ip_exceeded or user_exceeded:
            if ip_exceeded and user_exceeded:
                lockout = max(cfg.ip_window_seconds, cfg.user_window_seconds)
                reason = (
                    f"Too many login attempts from this IP ({ip_count}/{cfg.ip_limit}) "
                    f"and for this user ({user_count}/{cfg.user_limit})"
                )
            elif ip_exceeded:
                lockout = cfg.ip_window_seconds
                reason = f"Too many login attempts from this IP ({ip_count}/{cfg.ip_limit})"
            else:
                lockout = cfg.user_window_seconds
                reason = f"Too many login attempts for this user ({user_count}/{cfg.user_limit})"

            logger.info(f"Login rate limit hit for ip={ip} user={username}: {reason}")
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_time=now_dt + timedelta(seconds=lockout),
                lockout_seconds=lockout,
                reason=reason,
            )

        remaining = min(cfg.ip_limit - ip_count, cfg.user_limit - user_count)
        return RateLimitDecision(
            allowed=True,
            remaining_attempts=remaining,
            reset_time=now_dt + timedelta(seconds=cfg.ip_window_seconds),
        )

    async def record_failure(self, ip: str, username: str) -> BlockRecord | None:
        """Record a failed attempt on both axes, then apply the auto-block policy.

        Returns the block record if this failure caused ``ip`` to be blocked.
        """
        now = self._clock()
        attempt_id = f"{now}:{uuid.uuid4()}"

        await self._store.append(ip_attempts_key(ip), attempt_id, now, self.config.ip_window_seconds)
        await self._store.append(
            user_attempts_key(username), attempt_id, now, self.config.user_window_seconds
        )

        return await self.auto_block.evaluate(ip)

    async def clear(self, ip: str, username: str) -> None:
        """Forget all recorded failures for ``ip`` and ``username``."""
        await self._store.delete(ip_attempts_key(ip), user_attempts_key(username))
