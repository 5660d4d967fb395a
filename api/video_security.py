"""
Stream token issuance/validation, anti-hotlinking and HLS key derivation.

A stream token is an HS256 JWT binding one viewer, one video, the client IP
and the session id seen at issuance. Nothing is stored server-side: every
manifest, segment and key request re-validates the token against the IP and
session observed on that request, so tokens cannot be revoked early and
expire on their own.
"""

import enum
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote, urlsplit

from jose import JWTError, jwt

from api.errors import InvalidToken

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_EXPIRY = 3600
DEFAULT_CDN_BASE_URL = "/api/video"
HLS_KEY_LENGTH = 16  # AES-128


@dataclass(frozen=True)
class AccessClaim:
    """Decoded stream token payload."""

    user_id: Any
    video_id: str
    client_ip: str
    session_id: Optional[str]
    issued_at: int
    expires_at: int

    def to_payload(self) -> dict:
        return {
            "userId": self.user_id,
            "videoId": self.video_id,
            "userIP": self.client_ip,
            "sessionId": self.session_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AccessClaim":
        """Build a claim from a decoded payload. Raises KeyError/TypeError/ValueError if malformed."""
        return cls(
            user_id=payload["userId"],
            video_id=str(payload["videoId"]),
            client_ip=payload["userIP"],
            session_id=payload.get("sessionId"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )


class TokenStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    BINDING_MISMATCH = "binding_mismatch"


@dataclass(frozen=True)
class TokenCheck:
    """Outcome of validating a token. ``claim`` is set whenever the token decoded."""

    status: TokenStatus
    claim: Optional[AccessClaim] = None

    @property
    def valid(self) -> bool:
        return self.status is TokenStatus.VALID


class VideoSecurityManager:
    """Issues and validates stream tokens and derives per-video HLS keys.

    Args:
        secret_key: HMAC secret used to sign stream tokens
        encryption_key: Secret mixed into per-video key derivation
        allowed_domains: Referer hostnames (and their subdomains) allowed to embed
        token_expiry: Token lifetime in seconds
        cdn_base_url: Prefix for manifest URLs handed to players
        algorithm: JWT signing algorithm
        clock: Returns the current Unix time; injectable for tests
    """

    def __init__(
        self,
        secret_key: str,
        encryption_key: str,
        allowed_domains: Iterable[str] = (),
        token_expiry: int = DEFAULT_TOKEN_EXPIRY,
        cdn_base_url: str = DEFAULT_CDN_BASE_URL,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ):
        if not secret_key:
            raise ValueError("secret_key is required to sign stream tokens")
        if not encryption_key:
            raise ValueError("encryption_key is required to derive HLS keys")
        if token_expiry <= 0:
            raise ValueError(f"token_expiry must be positive, got {token_expiry}")

        self.secret_key = secret_key
        self.encryption_key = encryption_key
        self.allowed_domains = [d.strip().lower() for d in allowed_domains if d and d.strip()]
        self.token_expiry = token_expiry
        self.cdn_base_url = cdn_base_url.rstrip("/")
        self.algorithm = algorithm
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Token issuance
    # ------------------------------------------------------------------

    def issue_claim(
        self,
        user_id: Any,
        video_id: str,
        client_ip: str,
        session_id: Optional[str],
    ) -> AccessClaim:
        issued_at = self.now()
        return AccessClaim(
            user_id=user_id,
            video_id=str(video_id),
            client_ip=client_ip,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=issued_at + self.token_expiry,
        )

    def generate_stream_token(
        self,
        user_id: Any,
        video_id: str,
        client_ip: str,
        session_id: Optional[str],
    ) -> str:
        """Mint a signed token for one streaming session.

        The caller must already have confirmed that ``user_id`` may watch
        ``video_id``; this method only signs.
        """
        claim = self.issue_claim(user_id, video_id, client_ip, session_id)
        return jwt.encode(claim.to_payload(), self.secret_key, algorithm=self.algorithm)

    def generate_secure_playlist_url(self, video_id: str, token: str) -> str:
        # t= is a cache buster only, it is not checked anywhere
        timestamp_ms = int(self._clock() * 1000)
        return (
            f"{self.cdn_base_url}/{quote(str(video_id), safe='')}/playlist.m3u8"
            f"?token={token}&t={timestamp_ms}"
        )

    # ------------------------------------------------------------------
    # Token validation
    # ------------------------------------------------------------------

    def check_stream_token(
        self,
        token: Optional[str],
        client_ip: str,
        session_id: Optional[str],
        video_id: Optional[str] = None,
    ) -> TokenCheck:
        """Validate a token and report exactly why it failed.

        Checks run in order: signature/shape, expiry, then the binding to the
        observed client IP, session and (when known) the requested video.
        """
        if not token:
            return TokenCheck(TokenStatus.BAD_SIGNATURE)

        try:
            # Expiry is checked below against the injected clock
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
            claim = AccessClaim.from_payload(payload)
        except (JWTError, KeyError, TypeError, ValueError):
            return TokenCheck(TokenStatus.BAD_SIGNATURE)

        if self.now() > claim.expires_at:
            return TokenCheck(TokenStatus.EXPIRED, claim)

        if claim.client_ip != client_ip or claim.session_id != session_id:
            return TokenCheck(TokenStatus.BINDING_MISMATCH, claim)

        if video_id is not None and claim.video_id != str(video_id):
            return TokenCheck(TokenStatus.BINDING_MISMATCH, claim)

        return TokenCheck(TokenStatus.VALID, claim)

    def validate_stream_token(
        self,
        token: Optional[str],
        client_ip: str,
        session_id: Optional[str],
        video_id: Optional[str] = None,
    ) -> AccessClaim:
        """Return the claim for a valid token or raise InvalidToken.

        All failure kinds raise the same error so callers cannot leak which
        check failed.
        """
        result = self.check_stream_token(token, client_ip, session_id, video_id)
        if not result.valid:
            raise InvalidToken()
        return result.claim

    # ------------------------------------------------------------------
    # Anti-hotlinking
    # ------------------------------------------------------------------

    def is_valid_referer(self, referer: Optional[str]) -> bool:
        """Accept referers whose host is an allowed domain or a subdomain of one."""
        if not referer:
            return False

        try:
            hostname = urlsplit(referer).hostname
        except ValueError:
            return False

        if not hostname:
            return False

        return any(
            hostname == domain or hostname.endswith(f".{domain}")
            for domain in self.allowed_domains
        )

    # ------------------------------------------------------------------
    # HLS encryption
    # ------------------------------------------------------------------

    def generate_hls_encryption_key(self, video_id: str) -> bytes:
        """Derive the AES-128 key for a video: SHA-256(secret:video_id)[:16]."""
        digest = hashlib.sha256(f"{self.encryption_key}:{video_id}".encode("utf-8")).digest()
        return digest[:HLS_KEY_LENGTH]

    # Short aliases
    issue = generate_stream_token
    validate = validate_stream_token
    derive_key = generate_hls_encryption_key
    secure_manifest_url = generate_secure_playlist_url
