from __future__ import annotations

from sales_os.core.events import DomainEvent, InProcessEventBus


def test_exact_and_wildcard_subscribers_both_receive_events() -> None:
    bus = InProcessEventBus()
    exact: list[DomainEvent] = []
    wildcard: list[DomainEvent] = []
    bus.subscribe("sales.lead.created", exact.append)
    bus.subscribe("sales.*", wildcard.append)

    bus.publish("sales.lead.created", {"payload": {"lead_id": "rec1"}})
    bus.publish("sales.task.updated", {"payload": {"task_id": "rec2"}})
    bus.publish("system.started", {"service": "api"})

    assert [event.name for event in exact] == ["sales.lead.created"]
    assert [event.name for event in wildcard] == ["sales.lead.created", "sales.task.updated"]


def test_handler_registered_twice_runs_once() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: DomainEvent) -> None:
        seen.append(event.name)

    bus.subscribe("sales.*", handler)
    bus.subscribe("sales.*", handler)
    bus.subscribe("sales.opportunity.stage_changed", handler)

    bus.publish("sales.opportunity.stage_changed", {})

    assert seen == ["sales.opportunity.stage_changed"]
