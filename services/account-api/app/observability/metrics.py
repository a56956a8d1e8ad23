"""Prometheus metric definitions for account deletion."""

from prometheus_client import Counter, Histogram

# --- Bucket configurations ---

DELETION_PHASE_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)

# --- Job metrics ---

ACCOUNT_DELETION_JOBS = Counter(
    "account_api_account_deletion_jobs_total",
    "Account deletion worker passes by outcome",
    ["outcome"],
)

ACCOUNT_DELETION_REQUESTS = Counter(
    "account_api_account_deletion_requests_total",
    "Account deletion requests by resulting status",
    ["status"],
)

# --- Phase metrics ---

ACCOUNT_DELETION_PHASE_DURATION = Histogram(
    "account_api_account_deletion_phase_duration_seconds",
    "Account deletion phase latency in seconds",
    ["phase"],
    buckets=DELETION_PHASE_BUCKETS,
)

ACCOUNT_DELETION_RESOURCES_DELETED = Counter(
    "account_api_account_deletion_resources_deleted_total",
    "Documents, blobs and identities removed by account deletion",
    ["resource_type"],
)

# --- Store metrics ---

ACCOUNT_DELETION_STORE_RETRIES = Counter(
    "account_api_account_deletion_store_retries_total",
    "Store operations retried after a transient failure",
    ["operation"],
)
