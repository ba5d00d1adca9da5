"""Session token issuance and validation.

Tokens are HMAC-signed JWTs carrying the user id, username and role. There
is no server-side revocation list: a leaked token remains valid until its
``exp`` claim passes. Deployments that need faster invalidation for
privileged roles should shorten ``JWT_EXPIRE_SECONDS`` rather than rely on
logout, which only clears the browser cookie.
"""

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import jwt
from jwt.exceptions import PyJWTError

from app.core.counter_store import Clock
from app.services.auth import (
    InvalidTokenError,
    TokenConfigurationError,
    TokenExpiredError,
    TokenSigningError,
)

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "username", "role", "iat", "exp"]


class TokenIdentity(Protocol):
    """Anything a token can be issued for (a ``User`` row in practice)."""

    id: object
    username: str
    role: str


@dataclass(frozen=True)
class Claims:
    """Identity asserted by a validated token."""

    sub: str
    username: str
    role: str
    iat: int
    exp: int

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=UTC)


class TokenService:
    """Issues and validates signed session tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        algorithm: str = "HS256",
        clock: Clock = time.time,
    ):
        if not secret:
            raise TokenConfigurationError("Token secret must not be empty")
        if ttl_seconds <= 0:
            raise TokenConfigurationError("Token lifetime must be positive")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock
        self.ttl_seconds = ttl_seconds

    def issue(self, identity: TokenIdentity) -> tuple[str, datetime]:
        """Sign a token for ``identity``. Returns the token and its expiry."""
        return self._encode(str(identity.id), identity.username, identity.role)

    def validate(self, token: str) -> Claims:
        """Verify signature and expiry and return the token's claims.

        Time checks use the service clock only; PyJWT's own ``exp``/``iat``
        checks against the wall clock are switched off.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        try:
            claims = Claims(
                sub=str(payload["sub"]),
                username=str(payload["username"]),
                role=str(payload["role"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
            )
        except (TypeError, ValueError) as e:
            raise InvalidTokenError("Malformed token claims") from e

        now = self._clock()
        if claims.exp <= claims.iat:
            raise InvalidTokenError("Token expiry precedes issue time")
        if claims.iat > now:
            raise InvalidTokenError("Token issued in the future")
        if claims.exp <= now:
            raise TokenExpiredError("Token has expired")
        return claims

    def refresh(self, token: str) -> tuple[str, datetime]:
        """Validate ``token`` and issue a fresh one for the same identity."""
        claims = self.validate(token)
        return self._encode(claims.sub, claims.username, claims.role)

    def _encode(self, subject: str, username: str, role: str) -> tuple[str, datetime]:
        issued_at = int(self._clock())
        expires_at = issued_at + self.ttl_seconds
        payload = {
            "sub": subject,
            "username": username,
            "role": role,
            "iat": issued_at,
            "exp": expires_at,
        }
        try:
            token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        except (PyJWTError, NotImplementedError, TypeError) as e:
            logger.error(f"Failed to sign session token: {e}")
            raise TokenSigningError("Failed to generate token") from e
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token), datetime.fromtimestamp(expires_at, tz=UTC)
