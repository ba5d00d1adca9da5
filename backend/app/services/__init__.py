# Portfolio Services
from app.services.audit import AuditAction, AuditService
from app.services.auth import AuthService
from app.services.block_store import BlockRecord, BlockStore
from app.services.login import AuthOrchestrator, LoginResult, LoginState
from app.services.rate_limiter import (
    AutoBlockPolicy,
    RateLimitConfig,
    RateLimitDecision,
    SlidingWindowLimiter,
)
from app.services.setting import SettingService
from app.services.token import Claims, TokenService

__all__ = [
    "AuditAction",
    "AuditService",
    "AuthOrchestrator",
    "AuthService",
    "AutoBlockPolicy",
    "BlockRecord",
    "BlockStore",
    "Claims",
    "LoginResult",
    "LoginState",
    "RateLimitConfig",
    "RateLimitDecision",
    "SettingService",
    "SlidingWindowLimiter",
    "TokenService",
]
