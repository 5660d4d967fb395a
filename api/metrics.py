"""
Prometheus metrics for the stream gate.

Metrics are exposed at the /metrics endpoint in Prometheus text format.
Rejections are labelled with the internal reason (for example
``token_expired`` vs ``token_binding_mismatch``) even though clients only
ever see a generic error.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Info, generate_latest

# Application info
APP_INFO = Info("dramatize", "Dramatize stream gate information")

# =============================================================================
# Token Metrics
# =============================================================================

STREAM_TOKENS_ISSUED_TOTAL = Counter(
    "dramatize_stream_tokens_issued_total",
    "Total stream tokens issued",
)

SECURE_URL_DENIED_TOTAL = Counter(
    "dramatize_secure_url_denied_total",
    "Total secure URL requests refused",
    ["reason"],  # not_found, unavailable, user_mismatch
)

# =============================================================================
# Gate Metrics
# =============================================================================

GATE_REJECTIONS_TOTAL = Counter(
    "dramatize_gate_rejections_total",
    "Total video requests rejected by the gate",
    ["resource", "reason"],  # resource: manifest, segment, key
)

CONTENT_SERVED_TOTAL = Counter(
    "dramatize_content_served_total",
    "Total gated video responses served",
    ["resource"],  # manifest, segment, key
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "dramatize"})
