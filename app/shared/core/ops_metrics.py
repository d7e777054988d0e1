"""
Operational metrics for the admin trust boundary.

Prometheus counters and gauges tracking session churn, validation failures,
approval state transitions and the background cleanup sweep.
"""

from prometheus_client import Counter, Gauge

# --- API ---
API_ERRORS_TOTAL = Counter(
    "api_errors_total",
    "Total API errors by path, method and status code",
    ["path", "method", "status_code"],
)

# --- Admin Sessions ---
ADMIN_SESSION_EVENTS_TOTAL = Counter(
    "admin_session_events_total",
    "Admin session lifecycle events",
    ["event"],  # created, recreated, touched, terminated, touch_expired
)

ADMIN_SESSION_VALIDATION_FAILURES_TOTAL = Counter(
    "admin_session_validation_failures_total",
    "Admin session validations that resulted in an invalid session",
    ["reason"],
)

ADMIN_SESSION_INDEX_PRUNED_TOTAL = Counter(
    "admin_session_index_pruned_total",
    "Dangling session ids removed from session indexes on read",
)

# --- Dual-control Approvals ---
ADMIN_APPROVAL_TRANSITIONS_TOTAL = Counter(
    "admin_approval_transitions_total",
    "Approval request status transition attempts",
    ["transition", "outcome"],  # outcome: applied, noop, rejected
)

ADMIN_APPROVAL_EXECUTION_CHECKS_TOTAL = Counter(
    "admin_approval_execution_checks_total",
    "Execution-time approval validations",
    ["result"],
)

ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL = Counter(
    "admin_approval_cleanup_runs_total",
    "Approval cleanup sweep runs",
    ["status"],  # success, failure, skipped_running, skipped_locked
)

ADMIN_APPROVAL_CLEANUP_LAST_DELETED = Gauge(
    "admin_approval_cleanup_last_deleted",
    "Terminal approval rows deleted by the most recent cleanup run",
)

ADMIN_APPROVAL_LAZY_EXPIRATIONS_TOTAL = Counter(
    "admin_approval_lazy_expirations_total",
    "Pending approvals flipped to expired on read",
)
