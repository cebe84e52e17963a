"""Event model -- the universal message format flowing through the workflow bus.

Every event kind is a member of the closed `EventType` enumeration and maps
to a payload model. Context passed to `emit` is validated against that
model, so a mistyped field name fails loudly at the call site instead of
silently never matching a trigger.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Every event kind the system emits."""

    # Invoice
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_OVERDUE = "invoice.overdue"
    INVOICE_CANCELLED = "invoice.cancelled"

    # Contract
    CONTRACT_CREATED = "contract.created"
    CONTRACT_SENT = "contract.sent"
    CONTRACT_SIGNED = "contract.signed"
    CONTRACT_EXPIRED = "contract.expired"

    # Project
    PROJECT_CREATED = "project.created"
    PROJECT_STARTED = "project.started"
    PROJECT_COMPLETED = "project.completed"
    PROJECT_STATUS_CHANGED = "project.status_changed"
    PROJECT_MILESTONE_COMPLETED = "project.milestone_completed"

    # Client
    CLIENT_CREATED = "client.created"
    CLIENT_ACTIVATED = "client.activated"
    CLIENT_DEACTIVATED = "client.deactivated"

    # Messages and files
    MESSAGE_CREATED = "message.created"
    MESSAGE_READ = "message.read"
    FILE_UPLOADED = "file.uploaded"
    FILE_DOWNLOADED = "file.downloaded"

    # Proposals and leads
    PROPOSAL_CREATED = "proposal.created"
    PROPOSAL_SENT = "proposal.sent"
    PROPOSAL_ACCEPTED = "proposal.accepted"
    PROPOSAL_REJECTED = "proposal.rejected"
    LEAD_CREATED = "lead.created"
    LEAD_CONVERTED = "lead.converted"
    LEAD_STAGE_CHANGED = "lead.stage_changed"

    # Deliverables and tasks
    DELIVERABLE_SUBMITTED = "deliverable.submitted"
    DELIVERABLE_APPROVED = "deliverable.approved"
    DELIVERABLE_REJECTED = "deliverable.rejected"
    TASK_CREATED = "task.created"
    TASK_COMPLETED = "task.completed"
    TASK_OVERDUE = "task.overdue"

    # Client portal
    QUESTIONNAIRE_COMPLETED = "questionnaire.completed"
    DOCUMENT_REQUEST_APPROVED = "document_request.approved"

    @property
    def category(self) -> str:
        """Leading segment, e.g. 'invoice' for 'invoice.created'."""
        return self.value.split(".", 1)[0]

    @classmethod
    def parse(cls, value: str | EventType) -> EventType:
        """Coerce a string to an EventType, raising InvalidEventError if unknown."""
        try:
            return cls(value)
        except ValueError:
            raise InvalidEventError(f"Unknown event type: {value!r}") from None


class InvalidEventError(ValueError):
    """An event kind or its context does not fit the declared payload model."""


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class EventContext(BaseModel):
    """Base payload. Extra keys are kept so triggers can match on them."""

    model_config = ConfigDict(extra="allow")

    entity_id: int | None = None
    triggered_by: str = "system"


class ProposalAccepted(EventContext):
    entity_id: int
    client_id: int | None = None


class ContractSent(EventContext):
    project_id: int
    contract_id: int | None = None


class ContractSigned(EventContext):
    project_id: int | None = None
    contract_id: int | None = None
    signer_name: str | None = None
    signer_email: str | None = None


class ContractExpired(EventContext):
    project_id: int


class ProjectCreated(EventContext):
    entity_id: int
    client_id: int | None = None
    proposal_id: int | None = None
    project_type: str | None = None


class ProjectStatusChanged(EventContext):
    entity_id: int
    previous_status: str | None = None
    new_status: str
    reason: str | None = None


class MilestoneCompleted(EventContext):
    entity_id: int
    project_id: int | None = None
    milestone_title: str | None = None


class InvoiceEvent(EventContext):
    entity_id: int
    project_id: int | None = None
    client_id: int | None = None
    amount: float | None = None


class InvoiceCreated(InvoiceEvent):
    milestone_id: int | None = None
    invoice_number: str | None = None


class ClientEvent(EventContext):
    entity_id: int


class EntityEvent(EventContext):
    """Events about a single record that notification handlers resolve."""

    entity_id: int


PAYLOAD_MODELS: dict[EventType, type[EventContext]] = {
    EventType.PROPOSAL_ACCEPTED: ProposalAccepted,
    EventType.CONTRACT_SENT: ContractSent,
    EventType.CONTRACT_SIGNED: ContractSigned,
    EventType.CONTRACT_EXPIRED: ContractExpired,
    EventType.PROJECT_CREATED: ProjectCreated,
    EventType.PROJECT_STATUS_CHANGED: ProjectStatusChanged,
    EventType.PROJECT_MILESTONE_COMPLETED: MilestoneCompleted,
    EventType.INVOICE_CREATED: InvoiceCreated,
    EventType.INVOICE_SENT: InvoiceEvent,
    EventType.INVOICE_PAID: InvoiceEvent,
    EventType.INVOICE_OVERDUE: InvoiceEvent,
    EventType.CLIENT_ACTIVATED: ClientEvent,
    EventType.CLIENT_DEACTIVATED: ClientEvent,
    EventType.DELIVERABLE_APPROVED: EntityEvent,
    EventType.QUESTIONNAIRE_COMPLETED: EntityEvent,
    EventType.DOCUMENT_REQUEST_APPROVED: EntityEvent,
}


def payload_model_for(event_type: EventType) -> type[EventContext]:
    return PAYLOAD_MODELS.get(event_type, EventContext)


P = TypeVar("P", bound=EventContext)


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

class Event(BaseModel):
    """An immutable record of something that happened in the business domain.

    `context` holds the validated payload as plain JSON-compatible data;
    `payload(Model)` re-reads it as a typed model for handlers.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex[:12]}")
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict = Field(default_factory=dict)
    triggered_by: str = "system"
    correlation_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    causation_id: str | None = None
    depth: int = 0
    # Event types of the ancestors that led here, root first
    lineage: tuple[str, ...] = ()

    @property
    def entity_type(self) -> str:
        return self.event_type.category

    @property
    def entity_id(self) -> int | None:
        return self.context.get("entity_id")

    def payload(self, model: type[P]) -> P:
        return model.model_validate(self.context)

    def derive(self, event_type: EventType, context: dict) -> Event:
        """Create the next event in this event's causation chain."""
        return Event(
            event_type=event_type,
            context=context,
            triggered_by=context.get("triggered_by", "system"),
            correlation_id=self.correlation_id,
            causation_id=self.id,
            depth=self.depth + 1,
            lineage=(*self.lineage, self.event_type.value),
        )
