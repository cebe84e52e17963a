from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingAction, draft
from core.models.events import EventType, InvalidEventError
from core.models.triggers import ActionType


@pytest.fixture
def notify(registry) -> RecordingAction:
    action = RecordingAction("notify")
    registry.register("action", action)
    return action


async def test_emit_records_one_event_without_triggers(bus, seed):
    event = await bus.emit("invoice.created", {"entity_id": 5, "amount": 120})

    assert seed.count("system_events") == 1
    row = seed.store.fetch_one("SELECT * FROM system_events")
    assert row["id"] == event.id
    assert row["event_type"] == "invoice.created"
    assert row["entity_type"] == "invoice"
    assert row["entity_id"] == 5


async def test_inactive_trigger_never_runs(bus, triggers, notify, seed):
    triggers.create_trigger(draft("invoice.paid", is_active=False))

    await bus.emit(EventType.INVOICE_PAID, {"entity_id": 1})

    assert notify.calls == []
    assert seed.count("workflow_trigger_logs") == 0


async def test_triggers_run_by_priority_descending(bus, triggers, registry, seed):
    journal: list[str] = []
    registry.register("action", RecordingAction("notify", journal=journal))
    triggers.create_trigger(draft("task.created", priority=1, action_config={"tag": "low"}))
    triggers.create_trigger(draft("task.created", priority=10, action_config={"tag": "high"}))
    triggers.create_trigger(draft("task.created", priority=5, action_config={"tag": "mid"}))
    triggers.create_trigger(draft("task.created", priority=5, action_config={"tag": "mid-later"}))

    await bus.emit("task.created", {})

    assert journal == ["high", "mid", "mid-later", "low"]
    assert seed.count("workflow_trigger_logs", "status = 'success'") == 4


async def test_conditions_filter_triggers(bus, triggers, notify, seed):
    triggers.create_trigger(draft("invoice.paid", conditions={"amount_gt": 5000}))

    await bus.emit("invoice.paid", {"entity_id": 1, "amount": 100})
    assert notify.calls == []
    assert seed.count("workflow_trigger_logs") == 0

    await bus.emit("invoice.paid", {"entity_id": 2, "amount": 9000})
    assert len(notify.calls) == 1
    config, event = notify.calls[0]
    assert event.context["amount"] == 9000


async def test_failed_action_is_logged_and_siblings_still_run(bus, triggers, registry, notify, seed):
    registry.register("action", RecordingAction("webhook", error=RuntimeError("relay down")))
    failing = triggers.create_trigger(draft("invoice.sent", ActionType.WEBHOOK, priority=10))
    ok = triggers.create_trigger(draft("invoice.sent", priority=1))

    await bus.emit("invoice.sent", {"entity_id": 3})

    logs = {log.trigger_id: log for log in triggers.list_logs()}
    assert logs[failing.id].status == "failed"
    assert logs[failing.id].error == "relay down"
    assert logs[ok.id].status == "success"
    assert len(notify.calls) == 1


async def test_missing_action_implementation_is_a_failed_execution(bus, triggers, seed):
    trigger = triggers.create_trigger(draft("lead.created", ActionType.CREATE_TASK))

    await bus.emit("lead.created", {})

    [log] = triggers.list_logs(trigger.id)
    assert log.status == "failed"
    assert "create_task" in log.error


async def test_both_listeners_run_when_one_raises(bus):
    called: list[str] = []

    async def broken(event):
        called.append("broken")
        raise ValueError("boom")

    async def healthy(event):
        called.append("healthy")

    bus.on("message.created", broken)
    bus.on("message.created", healthy)

    await bus.emit("message.created", {})

    assert sorted(called) == ["broken", "healthy"]


async def test_listeners_run_before_triggers(bus, triggers, registry):
    order: list[str] = []

    async def listener(event):
        await asyncio.sleep(0)
        order.append("listener")

    registry.register("action", RecordingAction("notify", journal=order))
    triggers.create_trigger(draft("file.uploaded", action_config={"tag": "trigger"}))
    bus.on("file.uploaded", listener)

    await bus.emit("file.uploaded", {})

    assert order == ["listener", "trigger"]


async def test_off_removes_listener(bus):
    seen = []

    async def listener(event):
        seen.append(event)

    bus.on("task.completed", listener)
    bus.off("task.completed", listener)
    await bus.emit("task.completed", {})

    assert seen == []
    assert bus.listener_count("task.completed") == 0


async def test_nested_emit_joins_the_causation_chain(bus):
    children = []

    async def on_paid(event):
        children.append(await bus.emit("project.completed", {"entity_id": 9}))

    bus.on("invoice.paid", on_paid)
    root = await bus.emit("invoice.paid", {"entity_id": 1})

    [child] = children
    assert child.correlation_id == root.correlation_id
    assert child.causation_id == root.id
    assert child.depth == 1
    assert child.lineage == ("invoice.paid",)


async def test_runaway_chain_is_cut_at_max_depth(triggers, registry, seed):
    from core.bus import WorkflowTriggerService

    bus = WorkflowTriggerService(triggers, registry, max_chain_depth=3)
    dropped = []

    async def echo(event):
        result = await bus.emit("task.created", {})
        if result is None:
            dropped.append(event.depth)

    bus.on("task.created", echo)
    await bus.emit("task.created", {})

    # depths 0..3 are recorded, depth 4 is dropped
    assert seed.count("system_events") == 4
    assert dropped == [3]


async def test_unknown_event_type_is_rejected_before_persisting(bus, seed):
    with pytest.raises(InvalidEventError):
        await bus.emit("invoice.teleported", {})
    assert seed.count("system_events") == 0


async def test_context_must_fit_the_payload_model(bus, seed):
    with pytest.raises(InvalidEventError):
        await bus.emit("proposal.accepted", {"client_id": 3})
    assert seed.count("system_events") == 0


async def test_extra_context_fields_are_kept(bus):
    event = await bus.emit("invoice.paid", {"entity_id": 4, "method": "card"})
    assert event.context["method"] == "card"


async def test_malformed_stored_conditions_are_skipped(bus, notify, store):
    store.execute(
        """INSERT INTO workflow_triggers
           (name, event_type, conditions_json, action_type, action_config_json, created_at, updated_at)
           VALUES ('broken', 'invoice.paid', '{"amount_gt": "lots"}', 'notify', '{}', 'x', 'x')"""
    )

    await bus.emit("invoice.paid", {"entity_id": 1, "amount": 10})

    assert notify.calls == []
