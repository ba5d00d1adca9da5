"""Login orchestration: block check, rate check, credential check, side effects.

Each login runs through::

    START -> CHECKING_BLOCK -> CHECKING_RATE -> VERIFYING_CREDENTIALS
          -> SUCCESS | FAILURE -> DONE

The counter store is optional for availability: if it cannot be reached
while checking blocks or rate limits the attempt is allowed (fail-open), and
errors while recording failures or clearing counters are logged and dropped.
Credential verification and token signing have no fallback.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from app.core.counter_store import CounterStoreError
from app.services.audit import AuditAction, AuditService
from app.services.auth import (
    InvalidCredentialsError,
    TokenError,
    TooManyRequestsError,
    UserInactiveError,
)
from app.services.block_store import BlockRecord, BlockStore
from app.services.rate_limiter import SlidingWindowLimiter
from app.services.setting import LOGIN_RATE_LIMIT_ENABLED
from app.services.token import Claims, TokenService

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
PERMANENT_BLOCK_MESSAGE = (
    "Your IP address has been permanently blocked due to suspicious activity. "
    "Please contact support if you believe this is an error."
)
TEMPORARY_BLOCK_MESSAGE = (
    "Your IP address has been temporarily blocked due to suspicious activity. "
    "Please try again later or contact support if you believe this is an error."
)


class LoginState(str, Enum):
    START = "start"
    CHECKING_BLOCK = "checking_block"
    CHECKING_RATE = "checking_rate"
    VERIFYING_CREDENTIALS = "verifying_credentials"
    SUCCESS = "success"
    FAILURE = "failure"
    DONE = "done"


class CredentialVerifier(Protocol):
    """Looks up a user and checks the password. Raises on mismatch."""

    async def authenticate(self, username: str, password: str) -> Any: ...


class FeatureToggles(Protocol):
    """Read-only view of runtime feature toggles."""

    async def is_enabled(self, key: str, default: bool = True) -> bool: ...


@dataclass(frozen=True)
class LoginResult:
    user: Any
    token: str
    expires_at: datetime


def block_message(record: BlockRecord) -> str:
    return PERMANENT_BLOCK_MESSAGE if record.permanent else TEMPORARY_BLOCK_MESSAGE


class AuthOrchestrator:
    """Runs one login (or logout) through the security checks."""

    def __init__(
        self,
        credentials: CredentialVerifier,
        tokens: TokenService,
        limiter: SlidingWindowLimiter,
        blocks: BlockStore,
        audit: AuditService,
        toggles: FeatureToggles | None = None,
    ):
        self._credentials = credentials
        self._tokens = tokens
        self._limiter = limiter
        self._blocks = blocks
        self._audit = audit
        self._toggles = toggles
        self.state = LoginState.START

    def _transition(self, state: LoginState) -> None:
        logger.debug(f"Login state {self.state.value} -> {state.value}")
        self.state = state

    async def login(
        self,
        username: str,
        password: str,
        ip: str,
        user_agent: str | None = None,
    ) -> LoginResult:
        """Authenticate ``username`` from ``ip`` and issue a session token.

        Raises:
            TooManyRequestsError: the IP is blocked or a rate limit tripped
            InvalidCredentialsError: wrong username/password or inactive user
            TokenSigningError: the token could not be signed
        """
        self.state = LoginState.START
        audit_ctx = {"username": username, "ip_address": ip, "user_agent": user_agent}

        self._transition(LoginState.CHECKING_BLOCK)
        record = await self._check_block(ip)
        if record is not None:
            self._transition(LoginState.FAILURE)
            self._audit.emit(
                AuditAction.LOGIN_BLOCKED,
                f"Login attempt from blocked IP {ip}",
                success=False,
                details={"permanent": record.permanent, "reason": record.reason},
                **audit_ctx,
            )
            self._transition(LoginState.DONE)
            raise TooManyRequestsError(block_message(record), retry_after=None, permanent=record.permanent)

        self._transition(LoginState.CHECKING_RATE)
        if await self._rate_limit_enabled():
            await self._check_rate(username, ip, audit_ctx)

        self._transition(LoginState.VERIFYING_CREDENTIALS)
        try:
            user = await self._credentials.authenticate(username, password)
        except (InvalidCredentialsError, UserInactiveError) as e:
            await self._record_failure(ip, username)
            self._finish_failure(f"Failed login attempt for username: {username}", str(e), audit_ctx)
            raise InvalidCredentialsError(INVALID_CREDENTIALS) from e
        except Exception as e:
            # Lookup failed for reasons unrelated to the password; do not count it.
            logger.error(f"Credential verification error for {username}: {e}")
            self._finish_failure(f"Login error for username: {username}", "verification error", audit_ctx)
            raise InvalidCredentialsError(INVALID_CREDENTIALS) from e

        try:
            await self._limiter.clear(ip, username)
        except CounterStoreError as e:
            logger.warning(f"Failed to clear auth rate limit for {ip}/{username}: {e}")

        try:
            token, expires_at = self._tokens.issue(user)
        except TokenError:
            self._finish_failure(f"Token issuance failed for {username}", "token signing error", audit_ctx)
            raise

        self._transition(LoginState.SUCCESS)
        self._audit.emit(
            AuditAction.LOGIN,
            f"Successful login for user: {user.username}",
            user_id=str(user.id),
            **audit_ctx,
        )
        self._transition(LoginState.DONE)
        logger.info(f"User logged in: {user.username}")
        return LoginResult(user=user, token=token, expires_at=expires_at)

    def logout(self, claims: Claims, ip: str | None = None, user_agent: str | None = None) -> None:
        """Record a logout. Tokens are not revocable, so this is audit only."""
        self._audit.emit(
            AuditAction.LOGOUT,
            f"User {claims.username} logged out",
            user_id=claims.sub,
            username=claims.username,
            ip_address=ip,
            user_agent=user_agent,
        )
        logger.info(f"User logged out: {claims.username}")

    async def _check_block(self, ip: str) -> BlockRecord | None:
        try:
            return await self._blocks.get(ip)
        except CounterStoreError as e:
            logger.warning(f"Block check unavailable for {ip}, allowing attempt: {e}")
            return None

    async def _rate_limit_enabled(self) -> bool:
        if self._toggles is None:
            return True
        try:
            return await self._toggles.is_enabled(LOGIN_RATE_LIMIT_ENABLED, default=True)
        except Exception as e:
            logger.warning(f"Could not read login rate limit toggle, keeping it enabled: {e}")
            return True

    async def _check_rate(self, username: str, ip: str, audit_ctx: dict[str, Any]) -> None:
        try:
            decision = await self._limiter.check(ip, username)
        except CounterStoreError as e:
            logger.warning(f"Rate limiter check failed, allowing attempt: {e}")
            return

        if decision.allowed:
            return

        self._transition(LoginState.FAILURE)
        if decision.block is not None:
            # Blocked between the block check and the rate check
            self._audit.emit(
                AuditAction.LOGIN_BLOCKED,
                f"Login attempt from blocked IP {ip}",
                success=False,
                **audit_ctx,
            )
            self._transition(LoginState.DONE)
            raise TooManyRequestsError(
                block_message(decision.block),
                retry_after=None,
                permanent=decision.is_permanently_blocked,
            )

        self._audit.emit(
            AuditAction.LOGIN_RATE_LIMITED,
            decision.reason or "Too many authentication attempts",
            success=False,
            details={"lockout_seconds": decision.lockout_seconds},
            **audit_ctx,
        )
        self._transition(LoginState.DONE)
        raise TooManyRequestsError(
            decision.reason or "Too many authentication attempts",
            retry_after=decision.lockout_seconds,
        )

    async def _record_failure(self, ip: str, username: str) -> None:
        try:
            record = await self._limiter.record_failure(ip, username)
        except CounterStoreError as e:
            logger.warning(f"Failed to record auth failure for {ip}: {e}")
            return
        if record is not None:
            self._audit.emit(
                AuditAction.IP_AUTO_BLOCK,
                record.reason,
                success=False,
                ip_address=ip,
                details={"attempt_count": record.attempt_count, "permanent": record.permanent},
            )

    def _finish_failure(self, message: str, error: str, audit_ctx: dict[str, Any]) -> None:
        self._transition(LoginState.FAILURE)
        self._audit.emit(
            AuditAction.LOGIN_FAILED,
            message,
            success=False,
            details={"error": error},
            **audit_ctx,
        )
        self._transition(LoginState.DONE)
