"""Trigger models -- declarative rules binding an event type to an action."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from core.models.events import EventType


# ---------------------------------------------------------------------------
# Condition AST
# ---------------------------------------------------------------------------

class Eq(BaseModel):
    op: Literal["eq"] = "eq"
    field: str
    value: Any


class Gt(BaseModel):
    op: Literal["gt"] = "gt"
    field: str
    value: float


class Lt(BaseModel):
    op: Literal["lt"] = "lt"
    field: str
    value: float


class Contains(BaseModel):
    op: Literal["contains"] = "contains"
    field: str
    value: str


Condition = Annotated[Union[Eq, Gt, Lt, Contains], Field(discriminator="op")]


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    NOTIFY = "notify"
    CREATE_TASK = "create_task"
    UPDATE_STATUS = "update_status"
    WEBHOOK = "webhook"


class Trigger(BaseModel):
    id: int
    name: str
    description: str | None = None
    event_type: EventType
    conditions: list[Condition] | None = None
    action_type: ActionType
    action_config: dict = Field(default_factory=dict)
    is_active: bool = True
    priority: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TriggerDraft(BaseModel):
    """Fields accepted when creating or updating a trigger.

    Conditions arrive in their stored form, e.g. {"amount_gt": 5000}.
    """

    name: str
    description: str | None = None
    event_type: EventType
    conditions: dict[str, Any] | None = None
    action_type: ActionType
    action_config: dict = Field(default_factory=dict)
    is_active: bool = True
    priority: int = 0


class TriggerExecutionLog(BaseModel):
    id: int
    trigger_id: int
    event_id: str
    event_type: EventType
    status: Literal["success", "failed"]
    error: str | None = None
    execution_time_ms: int = 0
    executed_at: datetime
