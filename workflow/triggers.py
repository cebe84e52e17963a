"""Trigger store -- persistence for triggers, system events and execution logs.

The bus only needs `active_for`, `record_event` and `record_execution`;
the rest serves the admin API and CLI.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from core.clock import iso_now
from core.data.store import Store, dump_json, load_json
from core.models.events import Event, EventType
from core.models.triggers import ActionType, Trigger, TriggerDraft, TriggerExecutionLog
from workflow.conditions import ConditionError, parse_conditions

logger = logging.getLogger(__name__)

ACTION_DESCRIPTIONS: dict[ActionType, str] = {
    ActionType.SEND_EMAIL: "Send an email to the client, the admin or a fixed address",
    ActionType.NOTIFY: "Post an in-app notification",
    ActionType.CREATE_TASK: "Create a task on the event's project",
    ActionType.UPDATE_STATUS: "Update the status of the event's project, invoice or client",
    ActionType.WEBHOOK: "Send the event context to an external URL",
}


class TriggerNotFoundError(LookupError):
    pass


class TriggerStore:
    """Reads and writes workflow_triggers, system_events and workflow_trigger_logs."""

    def __init__(self, store: Store) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Read path used by the bus
    # ------------------------------------------------------------------

    def active_for(self, event_type: EventType) -> list[Trigger]:
        """Active triggers for an event type, highest priority first.

        Ties keep insertion order. Rows whose stored conditions no longer
        parse are skipped; a malformed rule must never match everything.
        """
        rows = self._store.fetch_all(
            """SELECT * FROM workflow_triggers
               WHERE event_type = ? AND is_active = 1
               ORDER BY priority DESC, id ASC""",
            (event_type.value,),
        )
        triggers: list[Trigger] = []
        for row in rows:
            try:
                triggers.append(self._row_to_trigger(row))
            except (ConditionError, ValidationError) as exc:
                logger.error("Skipping trigger %s (%s): %s", row["id"], row["name"], exc)
        return triggers

    def record_event(self, event: Event) -> None:
        self._store.execute(
            """INSERT INTO system_events
               (id, event_type, entity_type, entity_id, context_json, triggered_by,
                correlation_id, causation_id, depth, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.id,
                event.event_type.value,
                event.entity_type,
                event.entity_id,
                dump_json(event.context),
                event.triggered_by,
                event.correlation_id,
                event.causation_id,
                event.depth,
                event.timestamp.isoformat(),
            ),
        )

    def record_execution(
        self,
        trigger: Trigger,
        event: Event,
        error: str | None = None,
        execution_time_ms: int = 0,
    ) -> int:
        return self._store.insert(
            """INSERT INTO workflow_trigger_logs
               (trigger_id, event_id, event_type, status, error, execution_time_ms, executed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                trigger.id,
                event.id,
                event.event_type.value,
                "failed" if error is not None else "success",
                error,
                execution_time_ms,
                iso_now(),
            ),
        )

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_triggers(self, event_type: EventType | None = None) -> list[Trigger]:
        if event_type is None:
            rows = self._store.fetch_all(
                "SELECT * FROM workflow_triggers ORDER BY event_type, priority DESC, id"
            )
        else:
            rows = self._store.fetch_all(
                "SELECT * FROM workflow_triggers WHERE event_type = ? ORDER BY priority DESC, id",
                (event_type.value,),
            )
        return [self._row_to_trigger(row) for row in rows]

    def get_trigger(self, trigger_id: int) -> Trigger:
        row = self._store.fetch_one("SELECT * FROM workflow_triggers WHERE id = ?", (trigger_id,))
        if row is None:
            raise TriggerNotFoundError(f"Trigger {trigger_id} not found")
        return self._row_to_trigger(row)

    def create_trigger(self, draft: TriggerDraft) -> Trigger:
        parse_conditions(draft.conditions)  # reject bad rules before they are stored
        now = iso_now()
        trigger_id = self._store.insert(
            """INSERT INTO workflow_triggers
               (name, description, event_type, conditions_json, action_type,
                action_config_json, is_active, priority, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                draft.name,
                draft.description,
                draft.event_type.value,
                dump_json(draft.conditions or None),
                draft.action_type.value,
                dump_json(draft.action_config),
                int(draft.is_active),
                draft.priority,
                now,
                now,
            ),
        )
        logger.info("Created trigger %d: %s on %s", trigger_id, draft.name, draft.event_type.value)
        return self.get_trigger(trigger_id)

    def update_trigger(self, trigger_id: int, changes: dict[str, Any]) -> Trigger:
        """Apply a partial update; unknown keys are rejected by validation."""
        current = self.get_trigger(trigger_id)
        merged = current.model_dump(
            include={"name", "description", "event_type", "action_type",
                     "action_config", "is_active", "priority"},
        )
        merged["conditions"] = self._raw_conditions(trigger_id)
        merged.update(changes)
        draft = TriggerDraft.model_validate(merged)
        parse_conditions(draft.conditions)

        self._store.execute(
            """UPDATE workflow_triggers
               SET name = ?, description = ?, event_type = ?, conditions_json = ?,
                   action_type = ?, action_config_json = ?, is_active = ?, priority = ?,
                   updated_at = ?
               WHERE id = ?""",
            (
                draft.name,
                draft.description,
                draft.event_type.value,
                dump_json(draft.conditions or None),
                draft.action_type.value,
                dump_json(draft.action_config),
                int(draft.is_active),
                draft.priority,
                iso_now(),
                trigger_id,
            ),
        )
        return self.get_trigger(trigger_id)

    def toggle_trigger(self, trigger_id: int) -> Trigger:
        current = self.get_trigger(trigger_id)
        self._store.execute(
            "UPDATE workflow_triggers SET is_active = ?, updated_at = ? WHERE id = ?",
            (int(not current.is_active), iso_now(), trigger_id),
        )
        return self.get_trigger(trigger_id)

    def delete_trigger(self, trigger_id: int) -> bool:
        cursor = self._store.execute("DELETE FROM workflow_triggers WHERE id = ?", (trigger_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # History and catalogues
    # ------------------------------------------------------------------

    def list_logs(self, trigger_id: int | None = None, limit: int = 100) -> list[TriggerExecutionLog]:
        if trigger_id is None:
            rows = self._store.fetch_all(
                "SELECT * FROM workflow_trigger_logs ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._store.fetch_all(
                "SELECT * FROM workflow_trigger_logs WHERE trigger_id = ? ORDER BY id DESC LIMIT ?",
                (trigger_id, limit),
            )
        return [TriggerExecutionLog.model_validate(row) for row in rows]

    def list_events(self, event_type: EventType | None = None, limit: int = 100) -> list[dict]:
        if event_type is None:
            rows = self._store.fetch_all(
                "SELECT * FROM system_events ORDER BY timestamp DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._store.fetch_all(
                "SELECT * FROM system_events WHERE event_type = ? ORDER BY timestamp DESC LIMIT ?",
                (event_type.value, limit),
            )
        for row in rows:
            row["context"] = load_json(row.pop("context_json"), {})
        return rows

    @staticmethod
    def event_types() -> list[dict[str, str]]:
        return [{"value": et.value, "category": et.category} for et in EventType]

    @staticmethod
    def action_types() -> list[dict[str, str]]:
        return [{"value": at.value, "description": ACTION_DESCRIPTIONS[at]} for at in ActionType]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _raw_conditions(self, trigger_id: int) -> dict | None:
        raw = self._store.fetch_value(
            "SELECT conditions_json FROM workflow_triggers WHERE id = ?", (trigger_id,)
        )
        return load_json(raw)

    @staticmethod
    def _row_to_trigger(row: dict[str, Any]) -> Trigger:
        raw = row["conditions_json"]
        conditions = load_json(raw)
        if conditions is None and raw not in (None, "", "null"):
            raise ConditionError(f"Unreadable conditions JSON: {raw!r}")
        return Trigger(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            event_type=row["event_type"],
            conditions=parse_conditions(conditions),
            action_type=row["action_type"],
            action_config=load_json(row["action_config_json"], {}),
            is_active=bool(row["is_active"]),
            priority=row["priority"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
