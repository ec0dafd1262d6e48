"""Prometheus metrics export."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Request metrics
request_count = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)

# Reconciliation metrics
messages_merged_total = Counter(
    "messages_merged_total",
    "Total messages passed through the deduplicating merge",
)

duplicate_messages_total = Counter(
    "duplicate_messages_total",
    "Total messages collapsed into an existing copy",
)

chats_consolidated_total = Counter(
    "chats_consolidated_total",
    "Total raw chat records folded into another chat",
)

noise_chats_dropped_total = Counter(
    "noise_chats_dropped_total",
    "Raw chats dropped for having no messages and no resolvable identity",
)

department_selections_total = Counter(
    "department_selections_total",
    "Numeric department replies received",
    ["result"],  # selected | out_of_range | ignored
)

status_transitions_total = Counter(
    "chat_status_transitions_total",
    "Chat status transitions applied",
    ["from_status", "to_status"],
)

# Transport metrics
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Messages sent through the gateway",
    ["kind", "status"],  # kind: agent | department_menu | survey | chatbot
)

poll_cycles_total = Counter(
    "poll_cycles_total",
    "Polling reconciliation cycles",
    ["status"],
)

poll_cycle_duration = Histogram(
    "poll_cycle_duration_seconds",
    "Polling reconciliation cycle duration in seconds",
)

socket_reconnects_total = Counter(
    "socket_reconnects_total",
    "Duplex connection reconnect attempts",
)

socket_connected = Gauge(
    "socket_connected",
    "Whether the duplex connection is currently open (0/1)",
)

chats_in_memory = Gauge(
    "chats_in_memory",
    "Number of chats held by the live dispatcher",
)


def get_metrics_response() -> Response:
    """Get Prometheus metrics as HTTP response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
