"""
Request gate for manifest, segment and key fetches.

The gate is an explicit ordered pipeline of guards, each a plain function of
the observed request facts returning a GuardOutcome:

    rate limit -> referer -> token

Rejected requests still count against the rate limit.
Nothing is cached between requests: every fetch re-runs the full pipeline.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from api.common import get_real_ip, get_session_id
from api.errors import InvalidReferer, InvalidToken, RateLimited, VideoAccessError
from api.metrics import GATE_REJECTIONS_TOTAL
from api.rate_limit import RateLimiter
from api.video_security import AccessClaim, VideoSecurityManager

# Security event logger - separate from regular application logging
security_logger = logging.getLogger("security.video")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateRequest:
    """What the gate observed about one request."""

    client_ip: str
    session_id: Optional[str]
    referer: Optional[str]
    token: Optional[str]
    video_id: Optional[str]
    resource: str  # manifest, segment, key, secure_url


@dataclass(frozen=True)
class GuardOutcome:
    allowed: bool
    reason: str = ""
    error: Optional[VideoAccessError] = None
    headers: Dict[str, str] = field(default_factory=dict)
    claim: Optional[AccessClaim] = None

    @classmethod
    def passed(cls, headers: Dict[str, str] = None, claim: AccessClaim = None) -> "GuardOutcome":
        return cls(allowed=True, headers=headers or {}, claim=claim)

    @classmethod
    def rejected(cls, reason: str, error: VideoAccessError) -> "GuardOutcome":
        return cls(allowed=False, reason=reason, error=error, headers=error.headers)


Guard = Callable[[GateRequest], GuardOutcome]


@dataclass(frozen=True)
class GateDecision:
    """Result of running the whole pipeline."""

    allowed: bool
    reason: str = ""
    error: Optional[VideoAccessError] = None
    headers: Dict[str, str] = field(default_factory=dict)
    claim: Optional[AccessClaim] = None


def rate_limit_guard(limiter: RateLimiter) -> Guard:
    def guard(req: GateRequest) -> GuardOutcome:
        result = limiter.hit(req.client_ip)
        headers = result.headers() if result.limit else {}
        if not result.allowed:
            return GuardOutcome.rejected("rate_limited", RateLimited(headers=headers))
        return GuardOutcome.passed(headers=headers)

    return guard


def referer_guard(manager: VideoSecurityManager) -> Guard:
    def guard(req: GateRequest) -> GuardOutcome:
        if not manager.is_valid_referer(req.referer):
            reason = "referer_missing" if not req.referer else "referer_not_allowed"
            return GuardOutcome.rejected(reason, InvalidReferer())
        return GuardOutcome.passed()

    return guard


def token_guard(manager: VideoSecurityManager) -> Guard:
    def guard(req: GateRequest) -> GuardOutcome:
        check = manager.check_stream_token(req.token, req.client_ip, req.session_id, req.video_id)
        if not check.valid:
            # The client sees one generic error whatever the status
            return GuardOutcome.rejected(f"token_{check.status.value}", InvalidToken())
        return GuardOutcome.passed(claim=check.claim)

    return guard


class VideoGate:
    """Runs guards in order and stops at the first rejection."""

    def __init__(self, guards: Iterable[Guard]):
        self.guards: List[Guard] = list(guards)

    @classmethod
    def for_video_requests(cls, manager: VideoSecurityManager, limiter: RateLimiter) -> "VideoGate":
        return cls([rate_limit_guard(limiter), referer_guard(manager), token_guard(manager)])

    def evaluate(self, req: GateRequest) -> GateDecision:
        headers: Dict[str, str] = {}
        claim = None
        for guard in self.guards:
            outcome = guard(req)
            headers.update(outcome.headers)
            if not outcome.allowed:
                outcome.error.headers = headers
                return GateDecision(
                    allowed=False,
                    reason=outcome.reason,
                    error=outcome.error,
                    headers=headers,
                )
            claim = outcome.claim or claim
        return GateDecision(allowed=True, headers=headers, claim=claim)


def observe_request(request: Request, resource: str) -> GateRequest:
    """Collect the facts the gate checks from an incoming request."""
    return GateRequest(
        client_ip=get_real_ip(request),
        session_id=get_session_id(request),
        referer=request.headers.get("referer"),
        token=request.query_params.get("token"),
        video_id=request.path_params.get("video_id"),
        resource=resource,
    )


def _log_rejection(request: Request, req: GateRequest, decision: GateDecision) -> None:
    GATE_REJECTIONS_TOTAL.labels(resource=req.resource, reason=decision.reason).inc()
    # Never log the token or client IP
    security_logger.warning(
        "Video request rejected",
        extra={
            "event": "gate_rejection",
            "reason": decision.reason,
            "resource": req.resource,
            "video_id": req.video_id,
            "path": request.url.path,
        },
    )


def require_video_access(resource: str):
    """
    FastAPI dependency factory gating one kind of video request.

    Uses the gate stored on ``app.state.video_gate``. Returns the GateDecision
    (carrying the claim and rate limit headers) or raises the first rejection.

    Example:
        @router.get("/{video_id}/key")
        async def get_key(decision: GateDecision = Depends(require_video_access("key"))):
            ...
    """

    async def dependency(request: Request) -> GateDecision:
        gate: VideoGate = request.app.state.video_gate
        req = observe_request(request, resource)
        # Limiter storage may be Redis; keep its round trip off the event loop
        decision = await run_in_threadpool(gate.evaluate, req)
        if not decision.allowed:
            _log_rejection(request, req, decision)
            raise decision.error
        return decision

    return dependency


async def enforce_rate_limit(request: Request) -> Dict[str, str]:
    """FastAPI dependency applying only the rate limit guard (for token issuance)."""
    req = observe_request(request, "secure_url")
    gate = VideoGate([rate_limit_guard(request.app.state.rate_limiter)])
    decision = await run_in_threadpool(gate.evaluate, req)
    if not decision.allowed:
        _log_rejection(request, req, decision)
        raise decision.error
    return decision.headers
