"""Admin IP-blocking API endpoints.

All routes require an admin session.
"""

import logging
import math
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import (
    get_audit_service,
    get_block_store,
    get_request_ip,
    require_admin,
)
from app.core import CounterStoreError
from app.core.request_utils import get_user_agent
from app.schemas.auth import MessageResponse
from app.schemas.security import (
    BlockedIpListResponse,
    BlockedIpResponse,
    BlockIpRequest,
    BlockStatusFilter,
    SecurityStatsResponse,
)
from app.services.audit import AuditAction, AuditService
from app.services.block_store import BlockStore
from app.services.token import Claims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/security", tags=["security"])


def _store_unavailable(action: str, error: CounterStoreError) -> HTTPException:
    logger.error(f"Failed to {action}: {error}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Security store unavailable",
    )


@router.get("/blocked-ips", response_model=BlockedIpListResponse)
async def list_blocked_ips(
    status_filter: BlockStatusFilter | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _claims: Claims = Depends(require_admin),
    blocks: BlockStore = Depends(get_block_store),
) -> BlockedIpListResponse:
    """List blocked IPs, newest first."""
    try:
        records = await blocks.list_blocked()
    except CounterStoreError as e:
        raise _store_unavailable("list blocked IPs", e) from e

    now = datetime.now(UTC)
    items = [BlockedIpResponse.from_record(r, now) for r in records]
    if status_filter == "active":
        items = [i for i in items if i.is_active]
    elif status_filter == "expired":
        items = [i for i in items if not i.is_active]

    total = len(items)
    offset = (page - 1) * limit
    return BlockedIpListResponse(
        items=items[offset : offset + limit],
        total=total,
        page=page,
        limit=limit,
        pages=max(1, math.ceil(total / limit)),
    )


@router.post(
    "/block-ip",
    response_model=BlockedIpResponse,
    status_code=status.HTTP_201_CREATED,
)
async def block_ip(
    body: BlockIpRequest,
    request: Request,
    claims: Claims = Depends(require_admin),
    blocks: BlockStore = Depends(get_block_store),
    audit: AuditService = Depends(get_audit_service),
    client_ip: str = Depends(get_request_ip),
) -> BlockedIpResponse:
    """Block an IP address from logging in."""
    if body.ip == client_ip:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Refusing to block the IP address of the current session",
        )

    try:
        record = await blocks.block(body.ip, body.reason, permanent=body.permanent)
    except CounterStoreError as e:
        raise _store_unavailable("block IP", e) from e

    audit.emit(
        AuditAction.IP_BLOCK,
        f"IP {body.ip} has been {'permanently ' if record.permanent else ''}blocked",
        user_id=claims.sub,
        username=claims.username,
        ip_address=client_ip,
        user_agent=get_user_agent(request),
        details={"blocked_ip": body.ip, "reason": body.reason, "permanent": record.permanent},
    )
    return BlockedIpResponse.from_record(record, datetime.now(UTC))


@router.delete("/blocked-ips/{ip}", response_model=MessageResponse)
async def unblock_ip(
    ip: str,
    request: Request,
    claims: Claims = Depends(require_admin),
    blocks: BlockStore = Depends(get_block_store),
    audit: AuditService = Depends(get_audit_service),
    client_ip: str = Depends(get_request_ip),
) -> MessageResponse:
    """Remove a block. Succeeds whether or not the IP was blocked."""
    try:
        await blocks.unblock(ip)
    except CounterStoreError as e:
        raise _store_unavailable("unblock IP", e) from e

    audit.emit(
        AuditAction.IP_UNBLOCK,
        f"IP {ip} has been unblocked",
        user_id=claims.sub,
        username=claims.username,
        ip_address=client_ip,
        user_agent=get_user_agent(request),
        details={"blocked_ip": ip},
    )
    return MessageResponse(message=f"IP {ip} has been unblocked")


@router.get("/stats", response_model=SecurityStatsResponse)
async def get_security_stats(
    _claims: Claims = Depends(require_admin),
    blocks: BlockStore = Depends(get_block_store),
) -> SecurityStatsResponse:
    """Block counts for the admin dashboard."""
    try:
        stats = await blocks.stats()
    except CounterStoreError as e:
        raise _store_unavailable("fetch security stats", e) from e
    return SecurityStatsResponse(**stats)
