"""Security headers added to every backend response."""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

HSTS_MAX_AGE = 31536000


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses.

    HSTS is only sent when the request reached us over HTTPS (directly or via
    a proxy setting ``X-Forwarded-Proto``) and ``enable_hsts`` is on.
    """

    def __init__(self, app: ASGIApp, enable_hsts: bool = True):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=()"
        )
        # Session cookies and admin data must never be cached
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"

        if self.enable_hsts:
            forwarded_proto = request.headers.get("x-forwarded-proto", "")
            if forwarded_proto == "https" or request.url.scheme == "https":
                response.headers["Strict-Transport-Security"] = (
                    f"max-age={HSTS_MAX_AGE}; includeSubDomains"
                )

        return response
