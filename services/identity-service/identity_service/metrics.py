"""Prometheus instruments for authentication outcomes."""

from __future__ import annotations

from prometheus_client import Counter

AUTH_EVENTS = Counter(
    "identity_auth_events_total",
    "Authentication workflow outcomes by flow.",
    ["flow", "outcome"],
)


def record(flow: str, outcome: str) -> None:
    AUTH_EVENTS.labels(flow=flow, outcome=outcome).inc()
