"""Portfolio API Router - aggregates all API routes."""

from fastapi import APIRouter

from app.api import auth, security

# Main API router - all routes will be prefixed with /api/v1
api_router = APIRouter(prefix="/api/v1")

# Include routers
api_router.include_router(auth.router)
api_router.include_router(security.router)
