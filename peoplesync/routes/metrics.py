"""
Prometheus metrics endpoint.

Exposes integration metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Token Lifecycle Metrics
# ============================================

token_refreshes = Counter(
    'pco_token_refreshes_total',
    'Token validation outcomes',
    ['result']  # skipped, refreshed, reconnect_required, transport_error
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_received = Counter(
    'pco_webhooks_received_total',
    'Inbound upstream webhook deliveries',
    ['event', 'status']
)

# ============================================
# Sync Metrics
# ============================================

sync_pages_fetched = Counter(
    'pco_sync_pages_fetched_total',
    'Pages fetched by full sync',
    ['resource_type']
)

sync_records_upserted = Counter(
    'pco_sync_records_upserted_total',
    'Mirror rows upserted by full sync',
    ['resource_type']
)

sync_runs = Counter(
    'pco_sync_runs_total',
    'Full sync runs by result',
    ['resource_type', 'result']  # completed, truncated, aborted
)

# ============================================
# Eligibility Metrics
# ============================================

eligibility_outcomes = Counter(
    'eligibility_outcomes_total',
    'Recipient eligibility outcomes',
    ['outcome', 'reason']
)

eligible_recipients = Histogram(
    'eligible_recipients',
    'Recipients per successful eligibility run',
    buckets=[1, 10, 50, 100, 500, 1000, 5000, 10000, 50000]
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_token_refresh(result: str):
    token_refreshes.labels(result=result).inc()


def track_webhook(event: str, status: int):
    webhooks_received.labels(event=event or "unknown", status=str(status)).inc()


def track_sync_page(resource_type: str, records: int):
    sync_pages_fetched.labels(resource_type=resource_type).inc()
    sync_records_upserted.labels(resource_type=resource_type).inc(records)


def track_sync_run(resource_type: str, result: str):
    sync_runs.labels(resource_type=resource_type, result=result).inc()


def track_eligibility(outcome: str, reason: str | None, recipients: int = 0):
    """Record an eligibility run; recipient counts only for ready outcomes."""
    eligibility_outcomes.labels(outcome=outcome, reason=reason or "none").inc()
    if outcome == "ready":
        eligible_recipients.observe(recipients)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
