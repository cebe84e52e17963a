"""Approval requests awaiting a decision, with reminder bookkeeping."""

from __future__ import annotations

from typing import Any

from core.clock import iso_now
from core.data.store import Store


class ApprovalService:
    def __init__(self, store: Store) -> None:
        self._store = store

    def pending_requests(self) -> list[dict[str, Any]]:
        """Pending requests on in-flight workflow instances, oldest first."""
        return self._store.fetch_all(
            """SELECT r.id AS request_id, r.approver_email, r.reminder_count,
                      r.reminder_sent_at, r.created_at AS request_created_at,
                      i.id AS instance_id, i.entity_type, i.entity_id,
                      d.name AS workflow_name
               FROM approval_requests r
               JOIN approval_workflow_instances i ON i.id = r.workflow_instance_id
               LEFT JOIN approval_workflow_definitions d ON d.id = i.workflow_definition_id
               WHERE r.status = 'pending' AND i.status IN ('pending', 'in_progress')
               ORDER BY r.created_at, r.id"""
        )

    def record_reminder(self, request_id: int, approver_email: str) -> None:
        now = iso_now()
        with self._store.transaction():
            self._store.execute(
                """UPDATE approval_requests
                   SET reminder_count = reminder_count + 1, reminder_sent_at = ?
                   WHERE id = ?""",
                (now, request_id),
            )
            self._store.execute(
                "INSERT INTO approval_reminders (request_id, approver_email, sent_at) VALUES (?, ?, ?)",
                (request_id, approver_email, now),
            )
