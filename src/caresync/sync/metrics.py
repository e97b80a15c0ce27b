"""Prometheus metrics for the sync pipeline."""

from prometheus_client import Counter, Gauge, Histogram

sync_pushes_total = Counter(
    "caresync_sync_pushes_total",
    "Total number of record pushes by outcome",
    ["entity_type", "outcome"],
)

sync_push_duration_seconds = Histogram(
    "caresync_sync_push_duration_seconds",
    "Latency of a single record push",
    ["entity_type"],
)

sync_pulled_records_total = Counter(
    "caresync_sync_pulled_records_total",
    "Total number of remote records reconciled during pull",
    ["entity_type", "outcome"],
)

sync_superseded_total = Counter(
    "caresync_sync_superseded_total",
    "Total number of versions superseded by reconciliation",
    ["entity_type"],
)

sync_jobs = Gauge(
    "caresync_sync_jobs",
    "Number of sync jobs by state",
    ["state"],
)
