"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.services.auth import MIN_PASSWORD_LENGTH, is_strong_password

PASSWORD_STRENGTH_MESSAGE = (
    "Password must be at least 8 characters and contain a mix of uppercase, "
    "lowercase, numbers, and special characters"
)


class LoginRequest(BaseModel):
    """Request for login."""

    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1, max_length=256)


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str | None = None
    full_name: str | None = None
    role: str
    is_active: bool
    last_login_at: datetime | None = None


class SessionData(BaseModel):
    """Session details returned after login or refresh.

    The token itself travels only in the HttpOnly cookie.
    """

    user: UserResponse | None = None
    expires_at: datetime


class SessionResponse(BaseModel):
    """Envelope for a successful login or refresh."""

    success: bool = True
    data: SessionData


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(
        ...,
        min_length=MIN_PASSWORD_LENGTH,
        max_length=256,
        description="New password (minimum 8 characters, three character classes)",
    )

    @field_validator("new_password")
    @classmethod
    def validate_strength(cls, v: str) -> str:
        if not is_strong_password(v):
            raise ValueError(PASSWORD_STRENGTH_MESSAGE)
        return v


class PasswordChangeResponse(BaseModel):
    """The session cookie is cleared; the client must log in again."""

    success: bool = True
    message: str
    requires_reauth: bool = True


class UpdateProfileRequest(BaseModel):
    """Request to update the current user's profile."""

    full_name: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr


class ProfileData(BaseModel):
    user: UserResponse


class ProfileResponse(BaseModel):
    success: bool = True
    data: ProfileData
    message: str
