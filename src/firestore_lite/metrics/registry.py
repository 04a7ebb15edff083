"""
Prometheus metrics for the Firestore client.

Metrics live in the prometheus_client global REGISTRY; expose them with
``prometheus_client.start_http_server`` in the host application.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Request funnel ---

REQUESTS_TOTAL = Counter(
    "firestore_requests_total",
    "RPCs issued through the request funnel",
    ["method", "outcome"],
)

REQUEST_LATENCY_MS = Histogram(
    "firestore_request_latency_ms",
    "Unary RPC latency in milliseconds",
    ["method"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
)

REQUEST_RETRIES_TOTAL = Counter(
    "firestore_request_retries_total",
    "Retried RPC attempts",
    ["method"],
)

# --- Client pool ---

POOL_CLIENTS = Gauge(
    "firestore_pool_clients",
    "Transport clients currently held by the pool",
)

# --- Transactions ---

TRANSACTION_ATTEMPTS_TOTAL = Counter(
    "firestore_transaction_attempts_total",
    "Transaction attempts by outcome",
    ["outcome"],  # committed | retried | failed
)

# --- BulkWriter ---

BULK_WRITER_OPS_TOTAL = Counter(
    "firestore_bulk_writer_ops_total",
    "BulkWriter operations by type and outcome",
    ["op_type", "outcome"],  # outcome: success | retry | failure
)

BULK_WRITER_OPS_PER_SECOND = Gauge(
    "firestore_bulk_writer_ops_per_second",
    "Current BulkWriter throttling rate",
    ["writer"],
)


class MetricsRegistry:
    """Centralized access to client metrics."""

    requests_total = REQUESTS_TOTAL
    request_latency_ms = REQUEST_LATENCY_MS
    request_retries_total = REQUEST_RETRIES_TOTAL
    pool_clients = POOL_CLIENTS
    transaction_attempts_total = TRANSACTION_ATTEMPTS_TOTAL
    bulk_writer_ops_total = BULK_WRITER_OPS_TOTAL
    bulk_writer_ops_per_second = BULK_WRITER_OPS_PER_SECOND


metrics_registry = MetricsRegistry()
