"""
Error taxonomy for the video access-control gate.

Every rejection is terminal for the request and maps to one HTTP status.
Messages are deliberately generic so clients cannot tell which sub-check
failed (for example an expired token and an IP mismatch look identical).
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class VideoAccessError(Exception):
    """Base class for gate rejections rendered as ``{"error": message}``."""

    status_code = 403
    message = "Access denied"

    def __init__(self, message: str = "", headers: dict = None):
        self.message = message or self.message
        self.headers = headers or {}
        super().__init__(self.message)


class InvalidReferer(VideoAccessError):
    """Referer missing or not on the allow-list."""

    message = "Invalid referer"


class InvalidToken(VideoAccessError):
    """Signature invalid, token expired, or binding mismatch."""

    message = "Invalid or expired token"


class AccessDenied(VideoAccessError):
    """Entitlement check failed when issuing a token."""

    message = "Access denied"


class NotFound(VideoAccessError):
    status_code = 404
    message = "Not found"


class RateLimited(VideoAccessError):
    status_code = 429
    message = "Too many video requests, please try again later"


async def video_access_error_handler(request: Request, exc: VideoAccessError) -> JSONResponse:
    """Render a gate rejection as a JSON error body."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
        headers=exc.headers,
    )
