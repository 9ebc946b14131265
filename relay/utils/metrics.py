"""
Relay Metrics - Prometheus counters and histograms.

One module-level collector set, registered once per process and exposed
by GET /metrics.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST, REGISTRY


# Enclave proxy
tee_requests = Counter(
    'pm_relay_tee_requests_total',
    'Requests forwarded to the enclave',
    ['endpoint', 'outcome'],  # outcome: ok, upstream_error, upstream_unavailable, rejected
)
tee_duration = Histogram(
    'pm_relay_tee_request_duration_seconds',
    'Enclave round-trip duration in seconds',
    ['endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Quote verification
quote_verifications = Counter(
    'pm_relay_quote_verifications_total',
    'Quote verification outcomes',
    ['scope', 'outcome'],  # outcome: verified or the error code
)

# Sponsored transactions
sponsored_builds = Counter(
    'pm_relay_sponsored_builds_total',
    'Sponsored transaction builds',
    ['action', 'outcome'],
)
submissions = Counter(
    'pm_relay_submissions_total',
    'Dual-signed transaction submissions',
    ['outcome'],
)
finality_duration = Histogram(
    'pm_relay_finality_duration_seconds',
    'Time from submission to observed finality',
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Attestation
attestation_rotations = Counter(
    'pm_relay_attestation_rotations_total',
    'Attestation record rotation attempts',
    ['outcome'],
)


def render_latest():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
