"""Prometheus metrics for the tail orchestration engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

tails_active = Gauge(
    "podtail_tails_active",
    "Number of tails currently streaming",
)

tails_started_total = Counter(
    "podtail_tails_started_total",
    "Tails started since process start",
)

tails_closed_total = Counter(
    "podtail_tails_closed_total",
    "Tails closed since process start",
)

stream_retries_total = Counter(
    "podtail_stream_retries_total",
    "Log stream reopen attempts after a transient failure",
)

lines_total = Counter(
    "podtail_lines_total",
    "Log lines read, by filter outcome",
    ["result"],
)

watch_events_total = Counter(
    "podtail_watch_events_total",
    "Target events emitted by the pod watcher",
    ["kind"],
)


def serve_metrics(port: int) -> None:
    """Expose the default registry on *port*; a port of 0 disables it."""
    if port > 0:
        start_http_server(port)
