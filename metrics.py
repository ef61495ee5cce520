"""
Prometheus Metrics for the TDX gateway.

RED metrics for our own HTTP surface, plus cache effectiveness and the
health of the upstream TDX API (call outcomes, latency, token refreshes).

CARDINALITY:
    Labels are limited to route templates, status codes and fixed
    operation/outcome names. Never label by article id, query text or client.
"""

import logging

from prometheus_client import Counter, Histogram, REGISTRY

logger = logging.getLogger(__name__)


# =============================================================================
# RED METRICS (Rate, Errors, Duration)
# =============================================================================

tdx_gateway_requests_total = Counter(
    "tdx_gateway_requests_total",
    "Total HTTP requests to the gateway",
    labelnames=["endpoint", "status"],
)

tdx_gateway_request_duration_seconds = Histogram(
    "tdx_gateway_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["endpoint"],
    buckets=[
        0.005,  # cache hits
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,   # upstream timeout
        float("inf")
    ]
)


# =============================================================================
# CACHE METRICS
# =============================================================================

# kind: article, search | result: hit, miss
tdx_gateway_cache_lookups_total = Counter(
    "tdx_gateway_cache_lookups_total",
    "Read-through cache lookups by kind and result",
    labelnames=["kind", "result"],
)


# =============================================================================
# UPSTREAM (TDX) METRICS
# =============================================================================

# operation: test_connection, get_article, search_articles
# outcome: success, not_found, unauthorized, http_error, network_error, timeout
tdx_gateway_upstream_requests_total = Counter(
    "tdx_gateway_upstream_requests_total",
    "Calls made to the TDX API by operation and outcome",
    labelnames=["operation", "outcome"],
)

tdx_gateway_upstream_duration_seconds = Histogram(
    "tdx_gateway_upstream_duration_seconds",
    "TDX API call latency in seconds",
    labelnames=["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")]
)

# outcome: success, failure
tdx_gateway_token_refreshes_total = Counter(
    "tdx_gateway_token_refreshes_total",
    "TDX login calls made to refresh the bearer token",
    labelnames=["outcome"],
)


CACHE_KINDS = ("article", "search")
UPSTREAM_OUTCOMES = ("success", "not_found", "unauthorized", "http_error", "network_error", "timeout")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def record_request(endpoint: str, status: int, duration_seconds: float) -> None:
    """
    Record request metrics (counter + duration histogram).

    endpoint should be the route template ("/api/v1/articles/{article_id}"),
    not the raw path, to keep cardinality bounded.
    """
    tdx_gateway_requests_total.labels(endpoint=endpoint, status=str(status)).inc()
    tdx_gateway_request_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)


def record_cache_lookup(kind: str, hit: bool) -> None:
    """Record a read-through cache hit or miss."""
    if kind not in CACHE_KINDS:
        logger.warning(f"Invalid cache kind: {kind}")
        return

    tdx_gateway_cache_lookups_total.labels(kind=kind, result="hit" if hit else "miss").inc()


def record_upstream_call(operation: str, outcome: str, duration_seconds: float) -> None:
    """Record one TDX API call."""
    if outcome not in UPSTREAM_OUTCOMES:
        logger.warning(f"Invalid upstream outcome: {outcome}")
        return

    tdx_gateway_upstream_requests_total.labels(operation=operation, outcome=outcome).inc()
    tdx_gateway_upstream_duration_seconds.labels(operation=operation).observe(duration_seconds)


def record_token_refresh(success: bool) -> None:
    tdx_gateway_token_refreshes_total.labels(outcome="success" if success else "failure").inc()


__all__ = [
    "tdx_gateway_requests_total",
    "tdx_gateway_request_duration_seconds",
    "tdx_gateway_cache_lookups_total",
    "tdx_gateway_upstream_requests_total",
    "tdx_gateway_upstream_duration_seconds",
    "tdx_gateway_token_refreshes_total",
    "record_request",
    "record_cache_lookup",
    "record_upstream_call",
    "record_token_refresh",
    "REGISTRY",
]
