from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from backoffice.context import current_scope
from backoffice.core.events import event_bus

published_events: list[dict[str, Any]] = []


def _stamp(envelope: dict[str, Any]) -> dict[str, Any]:
    scope = current_scope()
    for key, fallback in (("correlation_id", scope.correlation_id), ("organization_id", scope.organization_id)):
        if envelope.get(key) is None:
            envelope[key] = fallback
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    return envelope


def publish(envelope: dict[str, Any]) -> None:
    """Record a billing envelope and fan it out on the in-process bus."""

    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event envelope requires an event_type")
    published_events.append(_stamp(envelope))
    event_bus.publish(event_type, envelope)


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [item for item in published_events if item.get("event_type") == event_type]
