"""
Prometheus metrics: order transitions and conflicts (executor), drive outcomes (worker/API),
recovery resolutions (scanner), queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created through the API",
)

# Executor: successful conditional updates
order_transitions_total = Counter(
    "order_transitions_total",
    "Total successful conditional state updates",
    ["from_state", "to_state"],
)
state_conflicts_total = Counter(
    "state_conflicts_total",
    "Total conditional updates rejected because the order was not in the expected state",
)
store_retries_total = Counter(
    "store_retries_total",
    "Total store calls retried after StoreUnavailable",
)

# Drive loop outcomes
drive_outcomes_total = Counter(
    "drive_outcomes_total",
    "Total drive loop runs by outcome",
    ["outcome"],
)
drive_failures_total = Counter(
    "drive_failures_total",
    "Total drive loop runs that raised, by error class",
    ["error"],
)
orders_dlq_total = Counter(
    "orders_dlq_total",
    "Total order ids moved to the DLQ",
)

# Recovery scanner
recovery_resolutions_total = Counter(
    "recovery_resolutions_total",
    "Total stale transitional orders handled by the recovery scanner",
    ["state", "resolution"],
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
