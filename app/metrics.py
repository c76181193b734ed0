from prometheus_client import Counter, Gauge, Histogram

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

REMOTE_FETCH_LATENCY = Histogram(
    "outline_metrics_fetch_seconds",
    "Latency of remote transfer-counter fetches",
    ["outcome"],
)
SNAPSHOTS_WRITTEN = Counter(
    "usage_snapshots_written_total",
    "Usage snapshots recorded",
    ["key_type"],
)
SNAPSHOT_KEY_FAILURES = Counter(
    "usage_snapshot_key_failures_total",
    "Keys whose snapshot could not be recorded",
    ["key_type"],
)
SERVER_FETCH_FAILURES = Counter(
    "outline_server_fetch_failures_total",
    "Remote counter fetches that failed",
    ["job"],
)
QUOTA_RESETS = Counter(
    "quota_resets_total",
    "Data-limit resets applied to the usage ledger",
    ["key_type", "strategy"],
)
LIMIT_PUSH_FAILURES = Counter(
    "outline_limit_push_failures_total",
    "Remote data-limit pushes that failed after a local reset",
)
USAGE_ALERTS_SENT = Counter(
    "usage_alerts_sent_total",
    "Usage and expiry alerts delivered",
    ["event"],
)
LAST_SNAPSHOT_RUN = Gauge(
    "usage_snapshot_last_run_timestamp",
    "Completion time of the last snapshot cycle (unix timestamp)",
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
