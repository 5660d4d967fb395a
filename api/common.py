"""
Request helpers and middleware shared by the stream gate routes.
"""

import asyncio
import logging
import secrets
import uuid
from pathlib import Path
from typing import Optional

from databases import Database
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from config import STORAGE_CHECK_TIMEOUT, TRUSTED_PROXIES

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "sid"
SESSION_USER_KEY = "user_id"
REQUEST_ID_HEADER = "X-Request-ID"


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES.
    This prevents attackers from spoofing the header to bypass rate limiting or to
    replay a stream token bound to someone else's IP.
    """
    client_ip = request.client.host if request.client else "unknown"

    # Only trust X-Forwarded-For if request came from a trusted proxy
    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2, ...
            # The first one is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


def get_session_id(request: Request) -> Optional[str]:
    """Session id stored in the signed session cookie, or None when there is no session."""
    if "session" not in request.scope:
        return None
    return request.session.get(SESSION_ID_KEY)


def ensure_session_id(request: Request) -> str:
    """Return the session id, creating one if this client has no session yet."""
    session_id = request.session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = secrets.token_urlsafe(24)
        request.session[SESSION_ID_KEY] = session_id
    return session_id


def get_session_user(request: Request) -> Optional[str]:
    """The user the site logged in on this session, if any."""
    if "session" not in request.scope:
        return None
    return request.session.get(SESSION_USER_KEY)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        # Prevent MIME-type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Players need the page origin in Referer for the anti-hotlinking check
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; media-src 'self' blob:; object-src 'none'; frame-ancestors 'none'"
        )
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or generate an X-Request-ID for each request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _check_storage_sync(videos_dir: Path) -> bool:
    """Check that the segment storage root exists and can be listed."""
    try:
        if not videos_dir.is_dir():
            return False
        next(videos_dir.iterdir(), None)
        return True
    except OSError:
        return False


async def check_health(db: Optional[Database], videos_dir: Path) -> dict:
    """
    Perform health checks for the catalog database and segment storage.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {"storage": False}

    # No database when the catalog is supplied by another service
    if db is not None:
        checks["database"] = False
        try:
            await db.fetch_one("SELECT 1")
            checks["database"] = True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")

    # Timeout guards against stale network mounts that would otherwise hang
    try:
        loop = asyncio.get_running_loop()
        checks["storage"] = await asyncio.wait_for(
            loop.run_in_executor(None, _check_storage_sync, videos_dir),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out - possible stale mount")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
