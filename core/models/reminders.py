"""Contract reminder and welcome sequence rows."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel

ContractReminderType = Literal["initial", "followup_3", "followup_7", "final_14"]

# Reminder type for each day offset after the contract is sent
CONTRACT_REMINDER_TYPES: dict[int, str] = {
    0: "initial",
    3: "followup_3",
    7: "followup_7",
    14: "final_14",
}


class ContractReminder(BaseModel):
    id: int
    project_id: int
    reminder_type: str
    scheduled_date: date
    sent_at: datetime | None = None
    status: Literal["pending", "sent", "skipped", "expired", "failed"] = "pending"


class WelcomeSequenceEmail(BaseModel):
    id: int
    client_id: int
    email_type: str
    days_after_signup: int
    scheduled_date: date
    sent_at: datetime | None = None
    status: Literal["pending", "sent", "skipped", "failed"] = "pending"
