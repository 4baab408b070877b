"""Metric definitions for the signaling service."""

from __future__ import annotations

from .registry import registry


signaling_connections = registry.gauge(
    "signaling_active_connections",
    "Number of open signaling websocket connections.",
    label_names=("scope",),
)

signaling_messages_total = registry.counter(
    "signaling_messages_total",
    "Envelopes processed by the coordination service.",
    label_names=("type", "outcome"),
)

signaling_deliveries_total = registry.counter(
    "signaling_deliveries_total",
    "Envelopes successfully written to a participant connection.",
    label_names=("type",),
)

signaling_protocol_errors_total = registry.counter(
    "signaling_protocol_errors_total",
    "Inbound frames dropped because they were not valid envelopes.",
    label_names=("reason",),
)
