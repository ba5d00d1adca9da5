# Portfolio Pydantic Schemas
from app.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeResponse,
    ProfileData,
    ProfileResponse,
    SessionData,
    SessionResponse,
    UpdateProfileRequest,
    UserResponse,
)
from app.schemas.security import (
    BlockedIpListResponse,
    BlockedIpResponse,
    BlockIpRequest,
    SecurityStatsResponse,
)

__all__ = [
    "BlockIpRequest",
    "BlockedIpListResponse",
    "BlockedIpResponse",
    "ChangePasswordRequest",
    "LoginRequest",
    "MessageResponse",
    "PasswordChangeResponse",
    "ProfileData",
    "ProfileResponse",
    "SecurityStatsResponse",
    "SessionData",
    "SessionResponse",
    "UpdateProfileRequest",
    "UserResponse",
]
