from __future__ import annotations

import logging

import pytest

from backoffice.core.events import InProcessEventBus, InternalEvent
from backoffice.main import _on_billing_alert


def test_prefix_subscription_receives_nested_events() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []
    bus.subscribe("invoice.*", lambda event: seen.append(event.name))

    bus.publish("invoice.paid", {"invoice_id": "i1"})
    bus.publish("invoice.overdue", {"invoice_id": "i1"})
    bus.publish("subscription.paused", {"subscription_id": "s1"})

    assert seen == ["invoice.paid", "invoice.overdue"]


def test_exact_and_prefix_handlers_are_called_once_each() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: InternalEvent) -> None:
        seen.append(event.name)

    bus.subscribe("invoice.paid", handler)
    bus.subscribe("invoice.*", handler)
    bus.subscribe("invoice.*", handler)

    bus.publish("invoice.paid", {})
    assert seen == ["invoice.paid"]


def test_unsubscribe_stops_delivery() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: InternalEvent) -> None:
        seen.append(event.name)

    bus.subscribe("subscription.*", handler)
    bus.publish("subscription.created", {})
    bus.unsubscribe("subscription.*", handler)
    bus.unsubscribe("subscription.*", handler)
    bus.publish("subscription.canceled", {})

    assert seen == ["subscription.created"]
    assert bus.handlers_for("subscription.canceled") == []


def test_handler_errors_reach_the_publisher() -> None:
    bus = InProcessEventBus()

    def failing(event: InternalEvent) -> None:
        raise RuntimeError(event.name)

    bus.subscribe("invoice.*", failing)
    with pytest.raises(RuntimeError):
        bus.publish("invoice.generated", {})


def test_internal_event_exposes_organization_id() -> None:
    assert InternalEvent("invoice.paid", {"organization_id": "org-1"}).organization_id == "org-1"
    assert InternalEvent("invoice.paid", {}).organization_id is None


def test_billing_alert_only_logs_attention_events(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="backoffice.lifecycle")

    _on_billing_alert(InternalEvent("invoice.paid", {"invoice_id": "i1"}))
    _on_billing_alert(InternalEvent("subscription.status_changed", {"status": "active"}))
    _on_billing_alert(
        InternalEvent(
            "subscription.status_changed",
            {"status": "past_due", "subscription_id": "s1", "organization_id": "org-1"},
        )
    )
    _on_billing_alert(InternalEvent("invoice.overdue", {"invoice_id": "i2", "organization_id": "org-1"}))

    alerts = [record for record in caplog.records if record.getMessage() == "billing.attention_required"]
    assert [record.task for record in alerts] == ["subscription.status_changed", "invoice.overdue"]
    assert alerts[0].subscription_id == "s1"
    assert alerts[1].invoice_id == "i2"
