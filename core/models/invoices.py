"""Invoice models shared by the invoice service, automations and scheduler."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

InvoiceStatus = Literal["draft", "sent", "viewed", "partial", "paid", "overdue", "cancelled"]
ReminderType = Literal["upcoming", "due", "overdue_3", "overdue_7", "overdue_14", "overdue_30"]
Frequency = Literal["weekly", "monthly", "quarterly"]

# Reminder type -> days relative to the due date
REMINDER_OFFSETS: dict[str, int] = {
    "upcoming": -3,
    "due": 0,
    "overdue_3": 3,
    "overdue_7": 7,
    "overdue_14": 14,
    "overdue_30": 30,
}


class LineItem(BaseModel):
    description: str
    quantity: float = 1
    rate: float = 0
    amount: float | None = None

    @model_validator(mode="after")
    def _fill_amount(self) -> LineItem:
        if self.amount is None:
            self.amount = round(self.quantity * self.rate, 2)
        return self


class InvoiceCreate(BaseModel):
    project_id: int
    client_id: int
    line_items: list[LineItem]
    notes: str | None = None
    terms: str | None = None
    milestone_id: int | None = None
    due_days: int = 14
    issued_date: date | None = None


class Invoice(BaseModel):
    id: int
    invoice_number: str
    project_id: int | None = None
    client_id: int | None = None
    milestone_id: int | None = None
    amount_total: float = 0
    amount_paid: float = 0
    status: InvoiceStatus = "draft"
    issued_date: date | None = None
    due_date: date | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    notes: str | None = None
    terms: str | None = None

    @property
    def amount_due(self) -> float:
        return round(self.amount_total - self.amount_paid, 2)


class InvoiceReminder(BaseModel):
    id: int
    invoice_id: int
    reminder_type: ReminderType
    scheduled_date: date
    sent_at: datetime | None = None
    status: Literal["pending", "sent", "skipped", "failed"] = "pending"
