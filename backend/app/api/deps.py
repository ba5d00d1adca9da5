"""Shared FastAPI dependencies for the API routers.

Long-lived security services are built once in the application lifespan and
kept on ``app.state``; per-request collaborators (database-backed services,
the login orchestrator) are assembled here.
"""

import logging
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import CounterStore, get_db, settings
from app.core.request_utils import get_client_ip
from app.models.user import User
from app.services.audit import AuditService
from app.services.auth import AuthService, InvalidTokenError
from app.services.block_store import BlockStore
from app.services.login import AuthOrchestrator
from app.services.rate_limiter import SlidingWindowLimiter
from app.services.setting import SettingService
from app.services.token import Claims, TokenService

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
INVALID_TOKEN_DETAIL = "Invalid or expired token"


def get_counter_store(request: Request) -> CounterStore:
    return request.app.state.counter_store


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_block_store(request: Request) -> BlockStore:
    return request.app.state.block_store


def get_rate_limiter(request: Request) -> SlidingWindowLimiter:
    return request.app.state.rate_limiter


def get_audit_service(request: Request) -> AuditService:
    return request.app.state.audit_service


def get_request_ip(request: Request) -> str:
    """Resolve the client IP, honouring proxy headers only from trusted peers."""
    return get_client_ip(request, settings.trusted_proxy_ip_set)


def get_auth_service(db: AsyncSession = Depends(get_db)) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db)


def get_setting_service(db: AsyncSession = Depends(get_db)) -> SettingService:
    """Dependency to get setting service."""
    return SettingService(db)


def get_orchestrator(
    auth_service: AuthService = Depends(get_auth_service),
    setting_service: SettingService = Depends(get_setting_service),
    tokens: TokenService = Depends(get_token_service),
    limiter: SlidingWindowLimiter = Depends(get_rate_limiter),
    blocks: BlockStore = Depends(get_block_store),
    audit: AuditService = Depends(get_audit_service),
) -> AuthOrchestrator:
    return AuthOrchestrator(
        credentials=auth_service,
        tokens=tokens,
        limiter=limiter,
        blocks=blocks,
        audit=audit,
        toggles=setting_service,
    )


def unauthorized(detail: str = INVALID_TOKEN_DETAIL) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def extract_token(request: Request) -> str | None:
    """Return the session token from the cookie, else the bearer header.

    The cookie wins when both are present.
    """
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_current_claims(
    request: Request,
    tokens: TokenService = Depends(get_token_service),
) -> Claims:
    """Dependency to get the claims of the authenticated caller."""
    token = extract_token(request)
    if token is None:
        raise unauthorized("Authentication required")
    try:
        return tokens.validate(token)
    except InvalidTokenError as e:
        logger.debug(f"Rejected session token: {e}")
        raise unauthorized() from e


async def require_admin(claims: Claims = Depends(get_current_claims)) -> Claims:
    """Dependency that only lets admin-role tokens through."""
    if claims.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return claims


async def get_current_user(
    claims: Claims = Depends(get_current_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Dependency to get the caller's user row.

    A valid token is not enough: the account must still exist and be active.
    """
    try:
        user_id = UUID(claims.sub)
    except ValueError as e:
        raise unauthorized() from e

    user = await auth_service.get_user_by_id(user_id)
    if user is None or not user.is_active:
        raise unauthorized()
    return user
