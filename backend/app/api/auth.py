"""Authentication API endpoints.

The session token is only ever delivered in an HttpOnly cookie; response
bodies carry the user and the expiry, never the token.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.api.deps import (
    get_audit_service,
    get_auth_service,
    get_current_claims,
    get_current_user,
    get_orchestrator,
    get_request_ip,
    get_token_service,
    unauthorized,
)
from app.core import settings
from app.core.request_utils import get_user_agent
from app.models.user import User
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
from app.services.audit import AuditAction, AuditService
from app.services.auth import (
    AccountConflictError,
    AuthService,
    InvalidCredentialsError,
    TokenError,
    TooManyRequestsError,
)
from app.services.login import AuthOrchestrator
from app.services.token import Claims, TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def set_session_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=max_age,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def too_many_requests(error: TooManyRequestsError) -> HTTPException:
    headers = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=error.message,
        headers=headers or None,
    )


@router.post("/login", response_model=SessionResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    tokens: TokenService = Depends(get_token_service),
    client_ip: str = Depends(get_request_ip),
) -> SessionResponse:
    """Authenticate and start a cookie session.

    Blocked IPs and clients over the login rate limit get 429.
    """
    try:
        result = await orchestrator.login(
            username=body.username,
            password=body.password,
            ip=client_ip,
            user_agent=get_user_agent(request),
        )
    except TooManyRequestsError as e:
        raise too_many_requests(e) from e
    except InvalidCredentialsError as e:
        raise unauthorized("Invalid credentials") from e
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from e

    set_session_cookie(response, result.token, tokens.ttl_seconds)
    return SessionResponse(
        data=SessionData(
            user=UserResponse.model_validate(result.user),
            expires_at=result.expires_at,
        )
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    claims: Claims = Depends(get_current_claims),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    client_ip: str = Depends(get_request_ip),
) -> MessageResponse:
    """Log out the current user by expiring the session cookie.

    The token itself stays valid until it expires.
    """
    orchestrator.logout(claims, client_ip, get_user_agent(request))
    clear_session_cookie(response)
    return MessageResponse(message="Logged out successfully")


@router.post("/refresh", response_model=SessionResponse)
async def refresh_session(
    response: Response,
    user: User = Depends(get_current_user),
    tokens: TokenService = Depends(get_token_service),
) -> SessionResponse:
    """Reissue the session cookie with a fresh expiry.

    The new token is issued from the current user row, so a deactivated or
    deleted account cannot keep its session alive by refreshing.
    """
    try:
        new_token, expires_at = tokens.issue(user)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from e

    set_session_cookie(response, new_token, tokens.ttl_seconds)
    return SessionResponse(data=SessionData(expires_at=expires_at))


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(
    user: User = Depends(get_current_user),
) -> UserResponse:
    """Get the current user's information."""
    return UserResponse.model_validate(user)


@router.put("/change-password", response_model=PasswordChangeResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    claims: Claims = Depends(get_current_claims),
    user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
    audit: AuditService = Depends(get_audit_service),
    client_ip: str = Depends(get_request_ip),
) -> PasswordChangeResponse:
    """Change the current user's password and end the cookie session."""
    audit_ctx = {
        "user_id": claims.sub,
        "username": claims.username,
        "ip_address": client_ip,
        "user_agent": get_user_agent(request),
    }
    try:
        await auth_service.change_password(user, body.current_password, body.new_password)
    except InvalidCredentialsError as e:
        audit.emit(
            AuditAction.PASSWORD_CHANGE,
            f"Password change rejected for {claims.username}",
            success=False,
            details={"error": "current password incorrect"},
            **audit_ctx,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        ) from e

    audit.emit(
        AuditAction.PASSWORD_CHANGE,
        f"Password changed for {claims.username}, session cookie cleared",
        **audit_ctx,
    )
    clear_session_cookie(response)
    return PasswordChangeResponse(
        message="Password changed successfully. Please log in again with your new password."
    )


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    body: UpdateProfileRequest,
    request: Request,
    claims: Claims = Depends(get_current_claims),
    user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
    audit: AuditService = Depends(get_audit_service),
    client_ip: str = Depends(get_request_ip),
) -> ProfileResponse:
    """Update the current user's name, username and email."""
    try:
        updated = await auth_service.update_profile(
            user,
            username=body.username,
            email=body.email,
            full_name=body.full_name,
        )
    except AccountConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    audit.emit(
        AuditAction.PROFILE_UPDATE,
        f"Profile for {claims.username} updated",
        user_id=claims.sub,
        username=updated.username,
        ip_address=client_ip,
        user_agent=get_user_agent(request),
        details={"previous_username": claims.username},
    )
    return ProfileResponse(
        data=ProfileData(user=UserResponse.model_validate(updated)),
        message="Profile updated successfully",
    )
