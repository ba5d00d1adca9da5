"""Authentication errors, password hashing and credential verification."""

import logging
from datetime import UTC, datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)


class AuthError(Exception):
    """Base authentication error."""

    pass


class InvalidCredentialsError(AuthError):
    """Invalid username or password."""

    pass


class UserInactiveError(AuthError):
    """User account is deactivated."""

    pass


class AccountConflictError(AuthError):
    """Username or email already belongs to another account."""

    pass


class TooManyRequestsError(AuthError):
    """Login refused by rate limiting or an IP block.

    ``retry_after`` is None for blocks, which have no client-visible reset.
    """

    def __init__(self, message: str, retry_after: int | None = None, permanent: bool = False):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.permanent = permanent


class TokenError(AuthError):
    """JWT token error."""

    pass


class InvalidTokenError(TokenError):
    """JWT token is invalid."""

    pass


class TokenExpiredError(InvalidTokenError):
    """JWT token has expired."""

    pass


class TokenSigningError(TokenError):
    """A token could not be signed. Internal error, never the client's fault."""

    pass


class TokenConfigurationError(TokenError):
    """The token service was configured with an unusable secret or lifetime."""

    pass


PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
MIN_PASSWORD_LENGTH = 8


def is_strong_password(password: str) -> bool:
    """At least 8 characters drawing on three of: lowercase, uppercase, digits, symbols."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    character_classes = [
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(c in PASSWORD_SYMBOLS for c in password),
    ]
    return sum(character_classes) >= 3


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except VerifyMismatchError:
        return False
    except InvalidHashError:
        logger.error("Stored password hash is not a valid argon2 hash")
        return False


class AuthService:
    """Credential verification against the users table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_by_username(self, username: str) -> User | None:
        """Get user by username."""
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> User | None:
        """Get user by ID."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def authenticate(self, username: str, password: str) -> User:
        """Authenticate a user and return the user object.

        Raises InvalidCredentialsError for both "user not found" and
        "wrong password" to prevent user enumeration.
        """
        user = await self.get_user_by_username(username)

        if user is None:
            # Perform a dummy hash to prevent timing attacks
            verify_password(password, hash_password("dummy"))
            raise InvalidCredentialsError("Invalid credentials")

        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid credentials")

        if not user.is_active:
            raise UserInactiveError("User account is deactivated")

        # Update last login time
        user.last_login_at = datetime.now(UTC)
        await self.session.commit()

        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> None:
        """Replace ``user``'s password after checking the current one.

        Existing session tokens stay valid until they expire; callers clear
        the session cookie so the browser has to log in again.
        """
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        user.password_hash = hash_password(new_password)
        await self.session.commit()

        logger.info(f"Password changed for user: {user.username}")

    async def update_profile(self, user: User, username: str, email: str, full_name: str) -> User:
        """Update the profile fields of ``user``.

        Raises AccountConflictError if the username or email is taken by
        another account.
        """
        if await self._is_taken(User.username, username, user.id):
            raise AccountConflictError("Username already exists")
        if await self._is_taken(User.email, email, user.id):
            raise AccountConflictError("Email already exists")

        user.username = username
        user.email = email
        user.full_name = full_name
        await self.session.commit()

        logger.info(f"Profile updated for user: {user.username}")
        return user

    async def _is_taken(self, column, value: str, exclude_id: UUID) -> bool:
        result = await self.session.execute(
            select(User.id).where(column == value, User.id != exclude_id)
        )
        return result.scalar_one_or_none() is not None
