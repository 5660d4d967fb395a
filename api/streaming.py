"""
Stream gate API - issues stream tokens and serves gated HLS content.
Runs on port 3000 by default.

Routes under /api/video:
    POST /secure-url                 issue a token and manifest URL
    GET  /{video_id}/playlist.m3u8   manifest with the token on every segment
    GET  /{video_id}/key             derived AES-128 key
    GET  /{video_id}/{segment}       one media segment
"""

import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from databases import Database
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from api.catalog import DatabaseCatalog, VideoCatalog
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    ensure_session_id,
    get_real_ip,
    get_session_user,
)
from api.database import configure_database, database
from api.errors import AccessDenied, NotFound, VideoAccessError, video_access_error_handler
from api.exception_utils import handle_api_exceptions
from api.guards import GateDecision, VideoGate, enforce_rate_limit, require_video_access
from api.metrics import (
    CONTENT_SERVED_TOTAL,
    METRICS_CONTENT_TYPE,
    SECURE_URL_DENIED_TOTAL,
    STREAM_TOKENS_ISSUED_TOTAL,
    get_metrics,
    init_app_info,
)
from api.playlist import load_and_rewrite
from api.rate_limit import RateLimiter, create_rate_limiter
from api.schemas import VIDEO_ID_PATTERN, SecureUrlRequest, SecureUrlResponse
from api.video_security import VideoSecurityManager
from config import (
    ALLOWED_DOMAINS,
    CDN_BASE_URL,
    CORS_ALLOWED_ORIGINS,
    HLS_ENCRYPTION_KEY,
    PORT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_VIDEO,
    SECURE_COOKIES,
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    SESSION_SECRET,
    TOKEN_ALGORITHM,
    TOKEN_EXPIRY,
    VIDEO_SECRET_KEY,
    VIDEOS_DIR,
)

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "playlist.m3u8"
NO_STORE = "no-cache, no-store, must-revalidate"
# Segments never change once packaged; private so shared caches keep out
SEGMENT_CACHE_CONTROL = "private, max-age=31536000"

SEGMENT_MEDIA_TYPES = {
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".aac": "audio/aac",
}
_VIDEO_ID_RE = re.compile(VIDEO_ID_PATTERN)
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*\.(ts|m4s|aac)$")

# Only artwork is served statically; playlists, segments and keys go through the gate
STATIC_MEDIA_EXTENSIONS = frozenset([".jpg", ".jpeg", ".png", ".webp"])


def resolve_video_file(videos_dir: Path, video_id: str, filename: str) -> Path:
    """Map a video id and file name to a path inside ``videos_dir``, or raise NotFound."""
    if not _VIDEO_ID_RE.match(video_id):
        raise NotFound("Video not found")
    root = videos_dir.resolve()
    path = (root / video_id / filename).resolve()
    if root not in path.parents:
        raise NotFound()
    return path


def create_video_security_router() -> APIRouter:
    """Build the /api/video routes. Dependencies are read from ``app.state``."""
    router = APIRouter()

    @router.post("/secure-url")
    @handle_api_exceptions("secure_url", "Failed to generate secure URL")
    async def create_secure_url(
        request: Request,
        data: SecureUrlRequest,
        rate_headers: Dict[str, str] = Depends(enforce_rate_limit),
    ):
        """Issue a stream token bound to this client's IP and session."""
        manager: VideoSecurityManager = request.app.state.security_manager
        catalog: VideoCatalog = request.app.state.catalog

        session_user = get_session_user(request)
        if session_user is not None and str(session_user) != str(data.user_id):
            SECURE_URL_DENIED_TOTAL.labels(reason="user_mismatch").inc()
            raise AccessDenied()

        video = await catalog.get_video(data.video_id)
        if video is None:
            SECURE_URL_DENIED_TOTAL.labels(reason="not_found").inc()
            raise NotFound("Video not found")

        if not await catalog.user_can_watch(data.user_id, data.video_id):
            SECURE_URL_DENIED_TOTAL.labels(reason="unavailable").inc()
            raise AccessDenied()

        session_id = ensure_session_id(request)
        token = manager.generate_stream_token(data.user_id, data.video_id, get_real_ip(request), session_id)
        stream_url = manager.generate_secure_playlist_url(data.video_id, token)

        STREAM_TOKENS_ISSUED_TOTAL.inc()
        logger.info("Stream token issued", extra={"event": "token_issued", "video_id": data.video_id})

        body = SecureUrlResponse(stream_url=stream_url, token=token, expires_in=manager.token_expiry)
        return JSONResponse(content=body.model_dump(by_alias=True), headers=rate_headers)

    @router.get("/{video_id}/" + PLAYLIST_NAME)
    async def get_playlist(
        request: Request,
        video_id: str,
        decision: GateDecision = Depends(require_video_access("manifest")),
    ):
        """Serve the stored playlist with the token appended to every segment."""
        path = resolve_video_file(request.app.state.videos_dir, video_id, PLAYLIST_NAME)
        try:
            playlist = await load_and_rewrite(path, request.query_params["token"])
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound("Playlist not found")

        CONTENT_SERVED_TOTAL.labels(resource="manifest").inc()
        return Response(
            content=playlist,
            media_type="application/vnd.apple.mpegurl",
            headers={**decision.headers, "Cache-Control": NO_STORE},
        )

    # Registered before the segment route so "key" is never taken for a segment name
    @router.get("/{video_id}/key")
    async def get_encryption_key(
        request: Request,
        video_id: str,
        decision: GateDecision = Depends(require_video_access("key")),
    ):
        """Serve the derived AES-128 key for the video's encrypted segments."""
        manager: VideoSecurityManager = request.app.state.security_manager
        key = manager.generate_hls_encryption_key(video_id)

        CONTENT_SERVED_TOTAL.labels(resource="key").inc()
        return Response(
            content=key,
            media_type="application/octet-stream",
            headers={**decision.headers, "Cache-Control": NO_STORE},
        )

    @router.get("/{video_id}/{segment}")
    async def get_segment(
        request: Request,
        video_id: str,
        segment: str,
        decision: GateDecision = Depends(require_video_access("segment")),
    ):
        """Serve one media segment."""
        if not _SEGMENT_RE.match(segment):
            raise NotFound("Segment not found")
        path = resolve_video_file(request.app.state.videos_dir, video_id, segment)
        if not path.is_file():
            raise NotFound("Segment not found")

        CONTENT_SERVED_TOTAL.labels(resource="segment").inc()
        return FileResponse(
            path,
            media_type=SEGMENT_MEDIA_TYPES[path.suffix.lower()],
            headers={**decision.headers, "Cache-Control": SEGMENT_CACHE_CONTROL},
        )

    return router


class ProtectedMediaFiles(StaticFiles):
    """
    Static artwork (thumbnails, posters) under the videos root.

    Direct requests without an allowed Referer are refused, and anything
    other than images is hidden so playlists, segments and keys can only be
    fetched through the token gate.
    """

    def __init__(self, *args, security_manager: VideoSecurityManager, **kwargs):
        super().__init__(*args, **kwargs)
        self.security_manager = security_manager

    async def get_response(self, path: str, scope) -> Response:
        referer = Request(scope).headers.get("referer")
        if not self.security_manager.is_valid_referer(referer):
            return PlainTextResponse("Direct access not allowed", status_code=403)

        if Path(path).suffix.lower() not in STATIC_MEDIA_EXTENSIONS:
            return PlainTextResponse("Not Found", status_code=404)

        try:
            response = await super().get_response(path, scope)
        except (OSError, PermissionError) as e:
            logger.warning(f"Storage unavailable for media file {path}: {e}")
            return JSONResponse(
                status_code=503,
                content={"error": "Video storage temporarily unavailable. Please try again later."},
                headers={"Retry-After": "30"},
            )
        response.headers["Cache-Control"] = "public, max-age=60, must-revalidate"
        return response


def create_app(
    security_manager: Optional[VideoSecurityManager] = None,
    rate_limiter: Optional[RateLimiter] = None,
    catalog: Optional[VideoCatalog] = None,
    db: Optional[Database] = None,
    videos_dir: Path = VIDEOS_DIR,
    session_secret: str = SESSION_SECRET,
    secure_cookies: bool = SECURE_COOKIES,
) -> FastAPI:
    """
    Build the stream gate application.

    Every collaborator can be injected; anything omitted is built from
    config. When ``catalog`` is omitted the database catalog is used and the
    database connection is managed by the app lifespan.
    """
    if security_manager is None:
        security_manager = VideoSecurityManager(
            secret_key=VIDEO_SECRET_KEY,
            encryption_key=HLS_ENCRYPTION_KEY,
            allowed_domains=ALLOWED_DOMAINS,
            token_expiry=TOKEN_EXPIRY,
            cdn_base_url=CDN_BASE_URL,
            algorithm=TOKEN_ALGORITHM,
        )
    if rate_limiter is None:
        rate_limiter = create_rate_limiter(RATE_LIMIT_ENABLED, RATE_LIMIT_VIDEO, RATE_LIMIT_STORAGE_URL)
    if catalog is None:
        if db is None:
            db = database
        catalog = DatabaseCatalog(db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        init_app_info()
        if not security_manager.allowed_domains:
            logger.warning("No allowed referer domains configured; every gated request will be refused")
        if db is not None:
            await db.connect()
            await configure_database(db)
        yield
        if db is not None:
            await db.disconnect()

    app = FastAPI(title="Dramatize", description="Secure HLS stream gate", lifespan=lifespan)

    app.state.security_manager = security_manager
    app.state.rate_limiter = rate_limiter
    app.state.video_gate = VideoGate.for_video_requests(security_manager, rate_limiter)
    app.state.catalog = catalog
    app.state.database = db
    app.state.videos_dir = Path(videos_dir)

    app.add_exception_handler(VideoAccessError, video_access_error_handler)

    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie=SESSION_COOKIE,
        max_age=SESSION_MAX_AGE,
        same_site="lax",
        https_only=secure_cookies,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=bool(CORS_ALLOWED_ORIGINS),
        allow_methods=["GET", "HEAD", "OPTIONS", "POST"],
        allow_headers=["Content-Type"],
        expose_headers=["Content-Length", "Content-Range", "X-Request-ID", "RateLimit-Remaining"],
    )

    app.include_router(create_video_security_router(), prefix="/api/video")

    app.mount(
        "/videos",
        ProtectedMediaFiles(directory=str(videos_dir), check_dir=False, security_manager=security_manager),
        name="videos",
    )

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring and load balancers.

        Returns 503 if the catalog database or segment storage is unavailable.
        """
        result = await check_health(request.app.state.database, request.app.state.videos_dir)
        return JSONResponse(
            status_code=result["status_code"],
            content={
                "status": "healthy" if result["healthy"] else "unhealthy",
                "checks": result["checks"],
            },
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics(), media_type=METRICS_CONTENT_TYPE)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
