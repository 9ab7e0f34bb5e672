"""Prometheus metrics for enrollment-service.

Every metric is defined here; modules import the one they own and
increment or observe it where the action happens.

WHAT TO ALERT ON
-----------------
  enrollment_lock_timeouts_total      rising: some pair is contended or a
                                      holder is stuck (see lock lease)
  reconciliation_findings{type}       any high-severity type above zero
                                      after a repair run
  idempotency_checks_total{result}    "error" climbing: store unreachable,
                                      webhooks running without dedup
  task_queue_depth{queue_name}        repair queue not draining: worker down

HTTP metrics use the route template as the endpoint label (see
MetricsMiddleware), so cardinality stays fixed no matter how many
students and courses exist.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
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
    # Cache hits land in the first buckets; an enroll holds a lock and
    # runs two ledger writes plus a verify read, so expect 25-100ms
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Enrollment consistency metrics
# ---------------------------------------------------------------------------

ENROLLMENT_OPERATIONS = Counter(
    "enrollment_operations_total",
    "Enrollment ledger mutations by operation and outcome",
    # outcome: created, deleted, updated, noop, conflict, not_enrolled
    ["operation", "outcome"],
)

LOCK_WAIT = Histogram(
    "enrollment_lock_wait_seconds",
    "Time spent waiting to acquire a pair lock",
    ["scope"],  # "enrollment" or "access_request"
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

LOCK_TIMEOUTS = Counter(
    "enrollment_lock_timeouts_total",
    "Pair lock acquisitions that gave up (LockBusyError)",
    ["scope"],
)

IDEMPOTENCY_CHECKS = Counter(
    "idempotency_checks_total",
    "Idempotency lookups by result",
    ["result"],  # "duplicate", "miss" or "error" (failed open)
)

RECONCILIATION_FINDINGS = Gauge(
    "reconciliation_findings",
    "Findings from the most recent reconciliation scan",
    ["type"],
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit", "miss" or "error"
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "reconciliation_repair", "maintenance"
)
