"""Prometheus metrics for the consumer service."""
from prometheus_client import Counter, Histogram

messages_processed = Counter(
    "pipeline_messages_total",
    "Messages settled by the processor",
    ["queue", "outcome"],
)

sink_insert_duration = Histogram(
    "pipeline_sink_insert_seconds",
    "Sink insert latency",
    ["queue"],
)
