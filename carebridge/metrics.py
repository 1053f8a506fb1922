"""Prometheus metrics for notifications and the push channel."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Gauge


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=()):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


PUSH_CONNECTIONS = _get_or_create_metric(
    Gauge,
    "carebridge_push_connections",
    "Joined push connections currently held by the session registry",
)
PUSH_FRAMES = _get_or_create_metric(
    Counter,
    "carebridge_push_frames_total",
    "Frames written to push connections",
    ["type", "outcome"],
)
NOTIFICATIONS_CREATED = _get_or_create_metric(
    Counter,
    "carebridge_notifications_created_total",
    "Notification ledger entries created",
    ["type"],
)
GOAL_TRANSITIONS = _get_or_create_metric(
    Counter,
    "carebridge_goal_transitions_total",
    "Persisted goal status transitions",
    ["from_status", "to_status"],
)


__all__ = [
    "GOAL_TRANSITIONS",
    "NOTIFICATIONS_CREATED",
    "PUSH_CONNECTIONS",
    "PUSH_FRAMES",
]
