"""
Prometheus metrics: order transitions (API), code validations, code dispatch (API + worker).
"""
from prometheus_client import Counter, Gauge, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order lifecycle transitions applied",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition attempts rejected",
    ["target_status", "reason"],
)

code_validations_total = Counter(
    "code_validations_total",
    "Delivery code validation attempts by outcome",
    ["outcome"],  # ok | mismatch | locked | rejected
)

codes_dispatched_total = Counter(
    "codes_dispatched_total",
    "Delivery codes handed to the dispatcher",
)
code_dispatch_failed_total = Counter(
    "code_dispatch_failed_total",
    "Delivery codes that could not be handed to the dispatcher",
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total dispatch jobs successfully delivered to the messaging gateway",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total dispatch jobs that failed (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total dispatch jobs moved to DLQ after max retries",
)

sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of dispatch jobs waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of dispatch jobs in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
