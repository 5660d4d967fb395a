"""
Tests for the stream gate HTTP API.

Covers token issuance, the gated manifest/segment/key routes, the protected
static artwork mount, and the health and metrics endpoints.
"""

from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
from jose import jwt
from prometheus_client import REGISTRY
from prometheus_client.parser import text_string_to_metric_families
from starlette.testclient import TestClient

from api.catalog import StaticCatalog
from api.rate_limit import WindowRateLimiter
from api.streaming import NO_STORE, SEGMENT_CACHE_CONTROL, create_app
from config import SESSION_COOKIE
from tests.conftest import TEST_CLIENT_IP, TEST_SESSION_SECRET, VALID_REFERER, make_session_cookie
from tests.fixtures.sample_hls import SAMPLE_SEGMENTS, segment_bytes

GATED = {"Referer": VALID_REFERER}


def request_secure_url(client, video_id="ep1", user_id=42, **kwargs):
    return client.post("/api/video/secure-url", json={"videoId": video_id, "userId": user_id}, **kwargs)


def issue_stream_url(client, video_id="ep1", **kwargs) -> str:
    response = request_secure_url(client, video_id, **kwargs)
    assert response.status_code == 200, response.text
    return response.json()["streamUrl"]


def token_from(url: str) -> str:
    return parse_qs(urlsplit(url).query)["token"][0]


class TestSecureUrl:
    """Tests for POST /api/video/secure-url."""

    def test_issues_token_and_manifest_url(self, client, security_manager):
        response = request_secure_url(client)
        assert response.status_code == 200

        data = response.json()
        assert set(data) == {"streamUrl", "token", "expiresIn"}
        assert data["expiresIn"] == 3600
        assert data["streamUrl"].startswith("/api/video/ep1/playlist.m3u8?token=")
        assert token_from(data["streamUrl"]) == data["token"]

        claim = security_manager.check_stream_token(
            data["token"], TEST_CLIENT_IP, jwt.get_unverified_claims(data["token"])["sessionId"]
        ).claim
        assert claim.user_id == 42
        assert claim.video_id == "ep1"

    def test_creates_session(self, client):
        response = request_secure_url(client)
        assert SESSION_COOKIE in response.cookies
        session_id = jwt.get_unverified_claims(response.json()["token"])["sessionId"]
        assert session_id

        # Second request reuses the session
        second = request_secure_url(client)
        assert jwt.get_unverified_claims(second.json()["token"])["sessionId"] == session_id

    def test_existing_session_is_bound(self, session_client):
        token = request_secure_url(session_client).json()["token"]
        assert jwt.get_unverified_claims(token)["sessionId"] == "s1"

    def test_rate_limit_headers(self, client):
        response = request_secure_url(client)
        assert response.headers["RateLimit-Limit"] == "100"
        assert response.headers["RateLimit-Remaining"] == "99"

    def test_unknown_video(self, client):
        response = request_secure_url(client, video_id="missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Video not found"}

    def test_unavailable_video(self, client):
        response = request_secure_url(client, video_id="ep-hidden")
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied"}

    def test_session_user_mismatch(self, client):
        client.cookies.set(SESSION_COOKIE, make_session_cookie({"sid": "s1", "user_id": "7"}))
        response = request_secure_url(client, user_id=42)
        assert response.status_code == 403
        assert response.json() == {"error": "Access denied"}

    def test_session_user_match(self, client):
        client.cookies.set(SESSION_COOKIE, make_session_cookie({"sid": "s1", "user_id": "42"}))
        assert request_secure_url(client, user_id=42).status_code == 200

    def test_forged_session_cookie_ignored(self, client):
        client.cookies.set(SESSION_COOKIE, make_session_cookie({"sid": "s1"}, secret="wrong-secret"))
        token = request_secure_url(client).json()["token"]
        assert jwt.get_unverified_claims(token)["sessionId"] != "s1"

    @pytest.mark.parametrize(
        "body",
        [
            {"userId": 1},
            {"videoId": "ep1"},
            {"videoId": "../etc", "userId": 1},
            {"videoId": "", "userId": 1},
            {"videoId": "x" * 51, "userId": 1},
        ],
    )
    def test_invalid_body(self, client, body):
        assert client.post("/api/video/secure-url", json=body).status_code == 422

    def test_catalog_failure_is_generic_500(self, app, client):
        class BrokenCatalog:
            async def get_video(self, video_id):
                raise RuntimeError("connection refused to db.internal:5432")

        app.state.catalog = BrokenCatalog()
        response = request_secure_url(client)
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate secure URL"}


class TestGatedManifest:
    """Tests for GET /api/video/{video_id}/playlist.m3u8."""

    def test_manifest_rewritten(self, client):
        url = issue_stream_url(client)
        token = token_from(url)

        response = client.get(url, headers=GATED)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert response.headers["cache-control"] == NO_STORE
        assert "RateLimit-Remaining" in response.headers
        for name in SAMPLE_SEGMENTS:
            assert f"{name}?token={token}&t=" in response.text
        assert response.text.startswith("#EXTM3U\n")

    def test_missing_referer(self, client):
        url = issue_stream_url(client)
        response = client.get(url)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid referer"}

    def test_foreign_referer(self, client):
        url = issue_stream_url(client)
        response = client.get(url, headers={"Referer": "https://evil.example/"})
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid referer"}

    def test_missing_token(self, client):
        response = client.get("/api/video/ep1/playlist.m3u8", headers=GATED)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_expired_token(self, client, clock):
        url = issue_stream_url(client)
        clock.advance(3601)
        response = client.get(url, headers=GATED)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_token_for_other_video(self, client):
        token = token_from(issue_stream_url(client, video_id="ep2"))
        response = client.get(f"/api/video/ep1/playlist.m3u8?token={token}", headers=GATED)
        assert response.status_code == 403

    def test_other_session(self, client, app):
        url = issue_stream_url(client)
        # Fresh client: same IP, no session cookie
        response = TestClient(app).get(url, headers=GATED)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_playlist_missing_on_disk(self, session_client, security_manager):
        token = security_manager.generate_stream_token(1, "ep9", TEST_CLIENT_IP, "s1")
        response = session_client.get(f"/api/video/ep9/playlist.m3u8?token={token}", headers=GATED)
        assert response.status_code == 404
        assert response.json() == {"error": "Playlist not found"}


class TestGatedSegments:
    """Tests for GET /api/video/{video_id}/{segment}."""

    def test_segment_served(self, client):
        url = issue_stream_url(client)
        token = token_from(url)

        response = client.get(f"/api/video/ep1/segment_0001.ts?token={token}", headers=GATED)
        assert response.status_code == 200
        assert response.content == segment_bytes(1)
        assert response.headers["content-type"] == "video/mp2t"
        assert response.headers["cache-control"] == SEGMENT_CACHE_CONTROL

    def test_segment_without_token(self, client):
        response = client.get("/api/video/ep1/segment_0000.ts", headers=GATED)
        assert response.status_code == 403

    def test_segment_without_referer(self, client):
        token = token_from(issue_stream_url(client))
        response = client.get(f"/api/video/ep1/segment_0000.ts?token={token}")
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid referer"}

    def test_missing_segment(self, client):
        token = token_from(issue_stream_url(client))
        response = client.get(f"/api/video/ep1/segment_9999.ts?token={token}", headers=GATED)
        assert response.status_code == 404
        assert response.json() == {"error": "Segment not found"}

    @pytest.mark.parametrize("name", ["thumbnail.jpg", "playlist.m4a", ".ts", "..ts"])
    def test_non_segment_names(self, client, name):
        token = token_from(issue_stream_url(client))
        response = client.get(f"/api/video/ep1/{name}?token={token}", headers=GATED)
        assert response.status_code == 404

    def test_invalid_token_checked_before_file_lookup(self, client):
        response = client.get("/api/video/ep1/segment_9999.ts?token=bogus", headers=GATED)
        assert response.status_code == 403


class TestGatedKey:
    """Tests for GET /api/video/{video_id}/key."""

    def test_key_served(self, client, security_manager):
        token = token_from(issue_stream_url(client))
        response = client.get(f"/api/video/ep1/key?token={token}", headers=GATED)
        assert response.status_code == 200
        assert response.content == security_manager.generate_hls_encryption_key("ep1")
        assert len(response.content) == 16
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.headers["cache-control"] == NO_STORE

    def test_key_requires_token(self, client):
        response = client.get("/api/video/ep1/key", headers=GATED)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_key_requires_referer(self, client):
        token = token_from(issue_stream_url(client))
        response = client.get(f"/api/video/ep1/key?token={token}")
        assert response.status_code == 403


class TestPlaybackSession:
    """End-to-end: issue, fetch manifest, follow segment links, expire."""

    @patch("api.common.TRUSTED_PROXIES", {TEST_CLIENT_IP})
    def test_full_session_bound_to_client_ip(self, client, clock):
        viewer = {"X-Forwarded-For": "1.2.3.4", **GATED}
        other_ip = {"X-Forwarded-For": "9.9.9.9", **GATED}

        url = issue_stream_url(client, headers={"X-Forwarded-For": "1.2.3.4"})
        assert jwt.get_unverified_claims(token_from(url))["userIP"] == "1.2.3.4"

        manifest = client.get(url, headers=viewer)
        assert manifest.status_code == 200

        segment_links = [line for line in manifest.text.splitlines() if line.startswith("segment_")]
        assert len(segment_links) == len(SAMPLE_SEGMENTS)
        for link in segment_links:
            response = client.get(f"/api/video/ep1/{link}", headers=viewer)
            assert response.status_code == 200

        # Same token from another network
        assert client.get(url, headers=other_ip).status_code == 403
        assert client.get(f"/api/video/ep1/{segment_links[0]}", headers=other_ip).status_code == 403

        clock.advance(3601)
        response = client.get(f"/api/video/ep1/{segment_links[0]}", headers=viewer)
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_untrusted_forwarded_for_ignored(self, client):
        url = issue_stream_url(client, headers={"X-Forwarded-For": "1.2.3.4"})
        assert jwt.get_unverified_claims(token_from(url))["userIP"] == TEST_CLIENT_IP


class TestRateLimiting:
    @pytest.fixture
    def limited_client(self, security_manager, catalog, videos_dir):
        app = create_app(
            security_manager=security_manager,
            rate_limiter=WindowRateLimiter(limit="3/minute"),
            catalog=catalog,
            videos_dir=videos_dir,
            session_secret=TEST_SESSION_SECRET,
            secure_cookies=False,
        )
        return TestClient(app)

    def test_429_after_limit(self, limited_client):
        url = issue_stream_url(limited_client)
        assert limited_client.get(url, headers=GATED).status_code == 200
        assert limited_client.get(url, headers=GATED).status_code == 200

        response = limited_client.get(url, headers=GATED)
        assert response.status_code == 429
        assert response.json() == {"error": "Too many video requests, please try again later"}
        assert response.headers["RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers

    def test_rate_limit_checked_before_referer(self, limited_client):
        for _ in range(3):
            assert limited_client.get("/api/video/ep1/key").status_code == 403
        assert limited_client.get("/api/video/ep1/key").status_code == 429

    def test_secure_url_rate_limited(self, limited_client):
        for _ in range(3):
            request_secure_url(limited_client)
        assert request_secure_url(limited_client).status_code == 429


class TestProtectedMediaFiles:
    """Tests for the /videos static artwork mount."""

    def test_thumbnail_with_referer(self, client):
        response = client.get("/videos/ep1/thumbnail.jpg", headers=GATED)
        assert response.status_code == 200
        assert response.content.startswith(b"\xff\xd8\xff")
        assert response.headers["cache-control"] == "public, max-age=60, must-revalidate"

    def test_direct_access_refused(self, client):
        response = client.get("/videos/ep1/thumbnail.jpg")
        assert response.status_code == 403
        assert response.text == "Direct access not allowed"

    @pytest.mark.parametrize("name", ["playlist.m3u8", "segment_0000.ts"])
    def test_stream_files_not_served_statically(self, client, name):
        assert client.get(f"/videos/ep1/{name}", headers=GATED).status_code == 404

    def test_missing_image(self, client):
        assert client.get("/videos/ep1/poster.png", headers=GATED).status_code == 404


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"storage": True}}

    def test_health_storage_missing(self, security_manager, rate_limiter, tmp_path):
        app = create_app(
            security_manager=security_manager,
            rate_limiter=rate_limiter,
            catalog=StaticCatalog(),
            videos_dir=tmp_path / "not-mounted",
            session_secret=TEST_SESSION_SECRET,
        )
        response = TestClient(app).get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_metrics(self, client):
        labels = {"resource": "key", "reason": "token_bad_signature"}
        before = REGISTRY.get_sample_value("dramatize_gate_rejections_total", labels) or 0.0

        request_secure_url(client)
        client.get("/api/video/ep1/key", headers=GATED)

        response = client.get("/metrics")
        assert response.status_code == 200
        samples = [s for family in text_string_to_metric_families(response.text) for s in family.samples]
        assert any(s.name == "dramatize_stream_tokens_issued_total" for s in samples)
        rejected = [s.value for s in samples if s.name == "dramatize_gate_rejections_total" and s.labels == labels]
        assert rejected == [before + 1]

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_propagated(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]
