"""Prometheus metric inventory.

All metrics live here so there is one list of what the service measures.
Modules import the object they need and update it where the work happens;
``GET /metrics`` exposes the lot.

Ingestion is the part worth watching: a rising ``duplicate`` share in
``progress_events_total`` means clients are retrying (flaky networks, or a
client that never sees its responses), and a non-zero ``failed`` rate means
events are bouncing back into someone's outbox.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP (MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

PROGRESS_EVENTS = Counter(
    "progress_events_total",
    "Submitted events by class and classification",
    ["event_class", "result"],  # progress|analytics x accepted|duplicate|failed
)

INGEST_BATCH_SIZE = Histogram(
    "ingest_batch_size",
    "Number of events per submitted batch",
    ["event_class"],
    # Client caps are 25 (progress) and 50 (analytics).
    buckets=[1, 2, 5, 10, 25, 50],
)

TENANT_REJECTIONS = Counter(
    "ingest_tenant_rejections_total",
    "Batches rejected because an event had no resolvable organization",
    ["event_class"],
)

# ---------------------------------------------------------------------------
# Supporting services
# ---------------------------------------------------------------------------

RATE_LIMIT_HITS = Counter(
    "rate_limit_hits_total",
    "Requests rejected by rate limiting (429s)",
    ["key_type"],  # user|ip
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Reconciliation cache lookups by result",
    ["operation"],  # hit|miss|invalidate
)
