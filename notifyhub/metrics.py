"""
Prometheus metrics for the dispatch engine.

The /metrics route in notifyhub.routes.metrics exposes everything registered
here.
"""
from prometheus_client import Counter, Histogram

# ============================================
# Dispatch Metrics
# ============================================

messages_dispatched = Counter(
    'notifyhub_messages_dispatched_total',
    'Messages accepted by an upstream provider',
    ['channel', 'provider']
)

provider_failures = Counter(
    'notifyhub_provider_failures_total',
    'Failed provider send attempts',
    ['channel', 'provider', 'error_kind']
)

messages_failed = Counter(
    'notifyhub_messages_failed_total',
    'Messages permanently marked failed',
    ['channel']
)

failovers = Counter(
    'notifyhub_failovers_total',
    'Sends that succeeded on a provider other than the first candidate',
    ['channel']
)

provider_response_time = Histogram(
    'notifyhub_provider_response_seconds',
    'Provider send latency in seconds',
    ['provider'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# ============================================
# Job Metrics
# ============================================

job_retries = Counter(
    'notifyhub_job_retries_total',
    'Job attempts that were scheduled for retry',
    ['job']
)

throttle_releases = Counter(
    'notifyhub_throttle_releases_total',
    'Jobs released back to the queue by the throttle guard',
    ['provider', 'channel']
)

status_transitions_rejected = Counter(
    'notifyhub_status_transitions_rejected_total',
    'Status changes dropped by the transition table',
    ['source', 'target']
)

# ============================================
# Circuit Breaker Metrics
# ============================================

circuit_transitions = Counter(
    'notifyhub_circuit_transitions_total',
    'Circuit breaker state changes',
    ['provider', 'state']
)

shared_store_errors = Counter(
    'notifyhub_shared_store_errors_total',
    'Redis errors absorbed by fail-open handling',
    ['component']
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_sent = Counter(
    'notifyhub_webhooks_sent_total',
    'Client webhook delivery attempts',
    ['event', 'status']
)

webhooks_failed = Counter(
    'notifyhub_webhooks_failed_total',
    'Client webhooks abandoned after all retries',
    ['event']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_dispatch(channel: str, provider: str, response_time_ms: int):
    """Record a message accepted by a provider."""
    messages_dispatched.labels(channel=channel, provider=provider).inc()
    provider_response_time.labels(provider=provider).observe(response_time_ms / 1000.0)


def track_provider_failure(channel: str, provider: str, error_kind: str):
    provider_failures.labels(channel=channel, provider=provider, error_kind=error_kind).inc()


def track_message_failed(channel: str):
    messages_failed.labels(channel=channel).inc()


def track_failover(channel: str):
    failovers.labels(channel=channel).inc()


def track_job_retry(job: str):
    job_retries.labels(job=job).inc()


def track_throttle_release(provider: str, channel: str):
    throttle_releases.labels(provider=provider, channel=channel).inc()


def track_transition_rejected(source: str, target: str):
    status_transitions_rejected.labels(source=source, target=target).inc()


def track_circuit_transition(provider: str, state: str):
    circuit_transitions.labels(provider=provider, state=state).inc()


def track_store_error(component: str):
    shared_store_errors.labels(component=component).inc()


def track_webhook_sent(event: str, status: str):
    """Record a webhook attempt; status is 'delivered', 'error' or the HTTP status code."""
    webhooks_sent.labels(event=event, status=status).inc()


def track_webhook_failed(event: str):
    webhooks_failed.labels(event=event).inc()
