"""Health check endpoint with database and counter store connectivity checks."""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from app.api.deps import get_counter_store
from app.core import CounterStore, check_db_connection, settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    counter_store: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(
    response: Response,
    store: CounterStore = Depends(get_counter_store),
) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database is unavailable. An unreachable counter store
    only degrades the service: logins fail open without it.
    """
    db_healthy = await check_db_connection()
    store_healthy = await store.ping()

    # Set appropriate status code for container orchestration
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    if db_healthy and store_healthy:
        overall = "healthy"
    elif db_healthy:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        counter_store="connected" if store_healthy else "disconnected",
    )
