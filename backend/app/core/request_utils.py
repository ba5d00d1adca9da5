"""Request utility functions for handling common request operations."""

import ipaddress
import logging
from collections.abc import Collection

from fastapi import Request

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT_IP = "unknown"


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request, trusted_proxies: Collection[str] = ()) -> str:
    """Get the client IP address from a request.

    Priority Order:
    1. X-Forwarded-For (first entry, the originating client)
    2. X-Real-IP
    3. Direct client connection

    When ``trusted_proxies`` is non-empty the forwarding headers are only
    honoured if the direct peer is one of those proxies; otherwise any
    client could pick the address its failed logins are counted against.
    Header values that are not valid IP addresses are ignored.

    Args:
        request: The FastAPI request object
        trusted_proxies: Peer addresses allowed to set forwarding headers

    Returns:
        Client IP address, or "unknown" if none is available
    """
    direct_ip = request.client.host if request.client else None
    headers_trusted = not trusted_proxies or (direct_ip is not None and direct_ip in trusted_proxies)

    if headers_trusted:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid IP in X-Forwarded-For header: {forwarded}")

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")
    else:
        logger.debug(f"Ignoring forwarding headers from untrusted peer: {direct_ip}")

    if direct_ip:
        return direct_ip

    return UNKNOWN_CLIENT_IP


def get_user_agent(request: Request) -> str | None:
    """Return the User-Agent header, truncated for storage."""
    user_agent = request.headers.get("User-Agent")
    return user_agent[:512] if user_agent else None
