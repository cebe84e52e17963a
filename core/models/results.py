"""Result shapes returned by batch operations and their manual triggers."""

from __future__ import annotations

from pydantic import BaseModel, Field


class EscalatedTask(BaseModel):
    task_id: int
    project_id: int
    title: str
    old_priority: str
    new_priority: str
    days_until_due: int


class EscalationResult(BaseModel):
    updated_count: int = 0
    escalated_tasks: list[EscalatedTask] = Field(default_factory=list)


class DeletedItemStats(BaseModel):
    clients: int = 0
    projects: int = 0
    invoices: int = 0
    proposals: int = 0

    @property
    def total(self) -> int:
        return self.clients + self.projects + self.invoices + self.proposals


class SoftDeleteResult(BaseModel):
    deleted: DeletedItemStats = Field(default_factory=DeletedItemStats)
    errors: list[str] = Field(default_factory=list)


class AnalyticsCleanupResult(BaseModel):
    page_views: int = 0
    interaction_events: int = 0


class InvoiceGenerationResult(BaseModel):
    scheduled: int = 0
    recurring: int = 0


class MilestoneGenerationResult(BaseModel):
    milestones_created: int = 0
    tasks_created: int = 0
    skipped: bool = False
