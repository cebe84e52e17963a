"""Pydantic data models shared across all components."""

from core.models.events import Event, EventContext, EventType, InvalidEventError
from core.models.invoices import Invoice, InvoiceCreate, InvoiceReminder, LineItem
from core.models.jobs import JobResult, JobState, SchedulerStatus
from core.models.reminders import ContractReminder, WelcomeSequenceEmail
from core.models.results import (
    AnalyticsCleanupResult,
    DeletedItemStats,
    EscalatedTask,
    EscalationResult,
    InvoiceGenerationResult,
    MilestoneGenerationResult,
    SoftDeleteResult,
)
from core.models.triggers import ActionType, Trigger, TriggerDraft, TriggerExecutionLog

__all__ = [
    "Event",
    "EventContext",
    "EventType",
    "InvalidEventError",
    "Invoice",
    "InvoiceCreate",
    "InvoiceReminder",
    "LineItem",
    "JobResult",
    "JobState",
    "SchedulerStatus",
    "ContractReminder",
    "WelcomeSequenceEmail",
    "AnalyticsCleanupResult",
    "DeletedItemStats",
    "EscalatedTask",
    "EscalationResult",
    "InvoiceGenerationResult",
    "MilestoneGenerationResult",
    "SoftDeleteResult",
    "ActionType",
    "Trigger",
    "TriggerDraft",
    "TriggerExecutionLog",
]
