"""Access control for the metrics listener.

Scrapes are accepted from loopback clients, or from anywhere when they
present the configured bearer token. The proxy listener itself is never
guarded: LAN clients reach it through DNS redirection and carry no
credentials.
"""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Callable, Optional

import structlog
from fastapi import HTTPException, Request, status


LOGGER = structlog.get_logger("lancache.metrics")


def _bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials.strip()


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    client_host = request.client.host if request.client else None
    if token:
        presented = _bearer_token(request)
        if presented is None or not hmac.compare_digest(presented.encode(), token.encode()):
            LOGGER.warning("rejected metrics scrape", client=client_host, reason="token")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not _is_loopback(client_host):
        LOGGER.warning("rejected metrics scrape", client=client_host, reason="remote")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Metrics access restricted to localhost; set LANCACHE_METRICS_TOKEN for remote scrapes",
        )


def metrics_guard(token: Optional[str]) -> Callable[[Request], None]:
    """Build a FastAPI dependency enforcing :func:`require_metrics_access`."""

    def dependency(request: Request) -> None:
        require_metrics_access(request, token)

    return dependency
