"""Prometheus metrics for sync outcomes, aggregator health, and data quality"""

from prometheus_client import Counter, Histogram

# Sync metrics
sync_counter = Counter(
    "cardsync_sync_total",
    "Connection syncs by outcome",
    ["outcome"],  # success | degraded | needs_reconnection | failed | skipped
)

reconnection_counter = Counter(
    "cardsync_reconnection_total",
    "Reconnection validations by outcome",
    ["outcome"],  # success | failed
)

# Aggregator metrics
aggregator_latency_histogram = Histogram(
    "cardsync_aggregator_latency_seconds",
    "Aggregator API response time",
    ["endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

aggregator_retry_counter = Counter(
    "cardsync_aggregator_retries_total",
    "Retried aggregator calls",
    ["reason"],  # rate_limit | transient
)

rate_limit_exhausted_counter = Counter(
    "cardsync_rate_limit_exhausted_total",
    "Aggregator calls that stayed rate limited through every retry",
)

chunk_failure_counter = Counter(
    "cardsync_chunk_failures_total",
    "Transaction fetch chunks that failed unrecoverably",
)

# Data quality metrics
transactions_upserted_counter = Counter(
    "cardsync_transactions_upserted_total",
    "Transactions written to the store",
)

transactions_skipped_counter = Counter(
    "cardsync_transactions_skipped_total",
    "Transactions rejected before storage",
    ["reason"],  # invalid_record | write_failed
)

extraction_source_counter = Counter(
    "cardsync_extraction_source_total",
    "Which cascade strategy produced each extracted field",
    ["field", "source"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_sync(outcome: str) -> None:
    sync_counter.labels(outcome=outcome).inc()


def record_extraction(field: str, source: str) -> None:
    extraction_source_counter.labels(field=field, source=source).inc()
