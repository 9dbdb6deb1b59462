"""Prometheus metrics for the gateway."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("genai_gateway", "GenAI gateway info")
APP_INFO.info({"version": "1.0.0", "name": "genai_gateway"})

REQUEST_COUNT = Counter(
    "genai_requests_total",
    "Total pipeline calls by outcome",
    ["provider", "model", "status"],
)

REQUEST_DURATION = Histogram(
    "genai_request_duration_seconds",
    "Pipeline call duration in seconds",
    ["provider", "model"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

CACHE_EVENTS = Counter(
    "genai_cache_events_total",
    "Response cache lookups",
    ["event"],  # hit | miss | error
)

RATE_LIMIT_DENIALS = Counter(
    "genai_rate_limit_denials_total",
    "Admission checks that were denied",
    ["provider", "model"],
)

RETRIES = Counter(
    "genai_retries_total",
    "Retry attempts scheduled after a retryable provider error",
    ["provider", "kind"],
)

TOKENS = Counter(
    "genai_tokens_total",
    "Tokens reported by providers",
    ["provider", "model", "direction"],  # input | output
)

COST = Counter(
    "genai_cost_total",
    "Accumulated request cost in the display currency",
    ["provider", "model"],
)


def metrics_payload() -> tuple[bytes, str]:
    """Render the Prometheus exposition body and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
