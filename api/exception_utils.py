"""
Standardized exception handling utilities.

Gate rejections (VideoAccessError) and HTTPExceptions pass through untouched
so their status codes survive; anything else is logged and turned into a
sanitized JSON error.
"""

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from api.errors import VideoAccessError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    This ensures:
    1. HTTPExceptions and VideoAccessErrors are always re-raised (never masked)
    2. Generic exceptions are logged and converted to ``{"error": error_detail}``

    Args:
        operation_name: Name of the operation for logging context
        error_detail: Error message returned for generic exceptions
        status_code: Status code returned for generic exceptions
        log_errors: Whether to log exceptions (default: True)

    Example:
        @handle_api_exceptions("secure_url", "Failed to generate secure URL")
        async def create_secure_url(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except (HTTPException, VideoAccessError):
                raise
            except Exception as e:
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                return JSONResponse(status_code=status_code, content={"error": error_detail})
        return wrapper
    return decorator
