"""
Pytest fixtures for stream gate tests.
Provides a controllable clock, an injected security manager, rate limiter and
catalog, packaged HLS output on disk, and a test client for the app.
"""

import json
import os
from base64 import b64encode
from pathlib import Path

import pytest
from itsdangerous import TimestampSigner

# Skip directory creation in config before anything imports it
os.environ["DRAMATIZE_TEST_MODE"] = "1"

from starlette.testclient import TestClient  # noqa: E402

from api.catalog import StaticCatalog  # noqa: E402
from api.rate_limit import WindowRateLimiter  # noqa: E402
from api.streaming import create_app  # noqa: E402
from api.video_security import VideoSecurityManager  # noqa: E402
from config import SESSION_COOKIE  # noqa: E402
from tests.fixtures.sample_hls import create_packaged_video  # noqa: E402

TEST_SECRET_KEY = "test-video-secret-key"
TEST_ENCRYPTION_KEY = "test-hls-encryption-key"
TEST_SESSION_SECRET = "test-session-secret"
ALLOWED_DOMAIN = "dramatize.example"
VALID_REFERER = f"https://{ALLOWED_DOMAIN}/watch/ep1"
CDN_BASE = "/api/video"

# Starlette's TestClient connects from this host
TEST_CLIENT_IP = "testclient"

START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_session_cookie(data: dict, secret: str = TEST_SESSION_SECRET) -> str:
    """Build a cookie value the way Starlette's SessionMiddleware signs it."""
    payload = b64encode(json.dumps(data).encode("utf-8"))
    return TimestampSigner(secret).sign(payload).decode("utf-8")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def security_manager(clock: FakeClock) -> VideoSecurityManager:
    return VideoSecurityManager(
        secret_key=TEST_SECRET_KEY,
        encryption_key=TEST_ENCRYPTION_KEY,
        allowed_domains=[ALLOWED_DOMAIN],
        token_expiry=3600,
        cdn_base_url=CDN_BASE,
        clock=clock,
    )


@pytest.fixture
def rate_limiter() -> WindowRateLimiter:
    # New memory storage per test
    return WindowRateLimiter(limit="100/15 minutes", storage_uri="memory://")


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog({"ep1": True, "ep2": True, "ep-hidden": False})


@pytest.fixture
def videos_dir(tmp_path: Path) -> Path:
    videos = tmp_path / "videos"
    videos.mkdir()
    create_packaged_video(videos, "ep1")
    create_packaged_video(videos, "ep2")
    return videos


@pytest.fixture
def app(security_manager, rate_limiter, catalog, videos_dir):
    return create_app(
        security_manager=security_manager,
        rate_limiter=rate_limiter,
        catalog=catalog,
        videos_dir=videos_dir,
        session_secret=TEST_SESSION_SECRET,
        secure_cookies=False,
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def session_client(client: TestClient) -> TestClient:
    """Client whose session id is "s1"."""
    client.cookies.set(SESSION_COOKIE, make_session_cookie({"sid": "s1"}))
    return client
