"""
Prometheus metrics export for recycler self-monitoring.

Exposes /metrics for Prometheus scraping.
"""

import structlog
from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

logger = structlog.get_logger()


# =============================================================================
# Counters
# =============================================================================

webhooks_received = Counter(
    'recycler_webhooks_received_total',
    'Webhooks received by source',
    ['source']  # heartbeat, deploy
)

heartbeat_decisions = Counter(
    'recycler_heartbeat_decisions_total',
    'Heartbeat handling results',
    ['action']  # no_action, recycled, recycle_failed, not_found, debounced, invalid_url
)

binding_resolutions = Counter(
    'recycler_binding_resolutions_total',
    'URL to app pool resolutions',
    ['result']  # found, not_found, invalid
)

recycles = Counter(
    'recycler_app_pool_recycles_total',
    'App pool recycle attempts by outcome',
    ['status']  # success, failure, not_found
)

deploy_outcomes = Counter(
    'recycler_deploy_outcomes_total',
    'Deployment webhook outcomes',
    ['outcome']
)


# =============================================================================
# Histograms
# =============================================================================

recycle_duration = Histogram(
    'recycler_recycle_duration_seconds',
    'Time taken to issue an app pool recycle',
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60]
)


build_info = Info(
    'recycler_build',
    'Recycler build information'
)


# =============================================================================
# Helper functions for recording metrics
# =============================================================================

def record_webhook(source: str):
    webhooks_received.labels(source=source).inc()


def record_heartbeat_decision(action: str):
    heartbeat_decisions.labels(action=action).inc()


def record_resolution(result: str):
    binding_resolutions.labels(result=result).inc()


def record_recycle(status: str, duration_seconds: float = None):
    """
    Record an app pool recycle.

    Args:
        status: success, failure or not_found
        duration_seconds: Time spent issuing the recycle
    """
    recycles.labels(status=status).inc()

    if duration_seconds is not None:
        recycle_duration.observe(duration_seconds)


def record_deploy_outcome(outcome: str):
    deploy_outcomes.labels(outcome=outcome).inc()


def get_metrics_response() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def init_metrics(version: str):
    """Initialize metrics with startup values."""
    build_info.info({
        'version': version,
        'app_name': 'IIS App Pool Recycler'
    })
    logger.info("prometheus_metrics_initialized", version=version)
