"""Priority escalation -- raise task priority as the due date approaches.

Priorities only ever move up. A task due within a day is urgent, within
three days high, within a week medium; anything further out keeps its
current priority.
"""

from __future__ import annotations

import logging
from typing import Any

from core.clock import iso_now, parse_date, utc_today
from core.data.store import Store
from core.models.results import EscalatedTask, EscalationResult

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"low": 1, "medium": 2, "high": 3, "urgent": 4}

# (max days until due, required priority), checked in order
ESCALATION_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (1, "urgent"),
    (3, "high"),
    (7, "medium"),
)


def get_required_priority(days_until_due: int) -> str:
    for max_days, priority in ESCALATION_THRESHOLDS:
        if days_until_due <= max_days:
            return priority
    return "low"


def should_escalate(current: str | None, required: str) -> bool:
    return PRIORITY_RANK.get(required, 0) > PRIORITY_RANK.get(current or "low", 0)


class PriorityEscalationService:
    def __init__(self, store: Store) -> None:
        self._store = store

    def preview_escalation(self, project_id: int | None = None) -> list[EscalatedTask]:
        """Tasks that would be escalated right now, without changing anything."""
        today = utc_today()
        preview: list[EscalatedTask] = []
        for task in self._open_tasks_with_due_dates(project_id):
            days = (parse_date(task["due_date"]) - today).days
            required = get_required_priority(days)
            if should_escalate(task["priority"], required):
                preview.append(EscalatedTask(
                    task_id=task["id"],
                    project_id=task["project_id"],
                    title=task["title"],
                    old_priority=task["priority"] or "low",
                    new_priority=required,
                    days_until_due=days,
                ))
        return preview

    def escalate_task_priorities(self, project_id: int | None = None) -> EscalationResult:
        escalated = self.preview_escalation(project_id)
        if not escalated:
            return EscalationResult()

        now = iso_now()
        with self._store.transaction():
            for task in escalated:
                self._store.execute(
                    "UPDATE project_tasks SET priority = ?, updated_at = ? WHERE id = ?",
                    (task.new_priority, now, task.task_id),
                )
        for task in escalated:
            logger.info(
                "Escalated task %d (%s) %s -> %s, due in %d day(s)",
                task.task_id, task.title, task.old_priority, task.new_priority, task.days_until_due,
            )
        return EscalationResult(updated_count=len(escalated), escalated_tasks=escalated)

    def escalate_all_projects(self) -> EscalationResult:
        return self.escalate_task_priorities(None)

    def _open_tasks_with_due_dates(self, project_id: int | None) -> list[dict[str, Any]]:
        sql = """SELECT t.id, t.project_id, t.title, t.priority, t.due_date
                 FROM project_tasks t
                 JOIN projects p ON p.id = t.project_id
                 WHERE t.due_date IS NOT NULL
                   AND t.status NOT IN ('completed', 'cancelled')
                   AND p.deleted_at IS NULL"""
        params: tuple = ()
        if project_id is not None:
            sql += " AND t.project_id = ?"
            params = (project_id,)
        return self._store.fetch_all(sql + " ORDER BY t.due_date, t.id", params)
