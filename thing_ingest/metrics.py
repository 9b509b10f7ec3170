"""Métricas Prometheus del núcleo de ingesta."""

from __future__ import annotations

from prometheus_client import Counter

MESSAGES_TOTAL = Counter(
    "piot_messages_total",
    "Bus messages handled by the ingestion core",
    ["result"],  # routed, unmatched, failed, dropped
)

PACKETS_TOTAL = Counter(
    "piot_packets_total",
    "Device packets handled by the ingestion core",
    ["result"],  # accepted, duplicate, failed
)

SINK_WRITES_TOTAL = Counter(
    "piot_sink_writes_total",
    "Fan-out writes to persistence sinks",
    ["sink", "result"],  # success, failed, skipped
)

PUBLISHES_TOTAL = Counter(
    "piot_publishes_total",
    "Outbound bus publishes",
    ["result"],  # success, failed
)
