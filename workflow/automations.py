"""Workflow automations -- the bus's own listeners.

Each handler implements one business rule and is idempotent:

- proposal.accepted           -> create (or refresh) the project
- contract.signed             -> activate the project
- project.milestone_completed -> invoice payment milestones exactly once
- client notification emails for the events in CLIENT_NOTIFICATIONS
- reminder bookkeeping (invoice.sent, contract.*, client.*) delegated to
  the invoice and scheduler services

Missing records are logged at warning level and ignored.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from core.clock import iso_now, utc_today
from core.data.store import Store, dump_json
from core.models.events import (
    ClientEvent,
    ContractExpired,
    ContractSent,
    ContractSigned,
    EntityEvent,
    Event,
    EventType,
    InvoiceEvent,
    MilestoneCompleted,
    ProposalAccepted,
)
from core.models.invoices import InvoiceCreate, LineItem
from core.protocols import EventBus
from services.audit import AuditLogger
from services.email import EmailDeliveryError, EmailService
from services.invoices import DEFAULT_TERMS, InvoiceNotFoundError, InvoiceService
from services.milestones import MilestoneGenerator

if TYPE_CHECKING:
    from scheduler.service import SchedulerService

logger = logging.getLogger(__name__)

# Project states a signed contract must not move backwards from
ACTIVE_OR_LATER = frozenset({"active", "in-progress", "in_progress", "completed"})

PAYMENT_KEYWORDS = ("deposit", "payment", "invoice", "billing", "final payment")

# event -> (lookup joining the entity to its client, subject, message)
CLIENT_NOTIFICATIONS: dict[EventType, tuple[str, str, str]] = {
    EventType.PROPOSAL_ACCEPTED: (
        """SELECT pr.client_id, COALESCE(pr.project_name, 'your project') AS project_name
           FROM proposal_requests pr WHERE pr.id = ?""",
        "Great news! Your proposal has been accepted",
        'Your proposal for "{project_name}" has been accepted. '
        "The next step is to review and sign the contract.",
    ),
    EventType.CONTRACT_SIGNED: (
        """SELECT p.client_id, p.project_name FROM projects p WHERE p.id = ?""",
        "Your project is officially underway",
        'Thank you for signing the contract for "{project_name}". Work is now in progress.',
    ),
    EventType.DELIVERABLE_APPROVED: (
        """SELECT p.client_id, p.project_name, d.title
           FROM deliverables d JOIN projects p ON p.id = d.project_id WHERE d.id = ?""",
        "Deliverable approved and ready",
        '"{title}" for "{project_name}" has been approved and is available in your files.',
    ),
    EventType.QUESTIONNAIRE_COMPLETED: (
        """SELECT COALESCE(q.client_id, p.client_id) AS client_id,
                  COALESCE(p.project_name, 'your project') AS project_name, q.title
           FROM questionnaires q LEFT JOIN projects p ON p.id = q.project_id WHERE q.id = ?""",
        "Questionnaire received",
        'Thanks for completing "{title}" for {project_name}. We will review your answers shortly.',
    ),
    EventType.DOCUMENT_REQUEST_APPROVED: (
        """SELECT COALESCE(dr.client_id, p.client_id) AS client_id,
                  COALESCE(p.project_name, 'your project') AS project_name, dr.title
           FROM document_requests dr LEFT JOIN projects p ON p.id = dr.project_id WHERE dr.id = ?""",
        "Document approved",
        'Your document "{title}" for {project_name} has been reviewed and approved.',
    ),
    EventType.INVOICE_PAID: (
        """SELECT i.client_id, i.invoice_number, printf('%.2f', i.amount_total) AS amount,
                  COALESCE(p.project_name, 'your project') AS project_name
           FROM invoices i LEFT JOIN projects p ON p.id = i.project_id WHERE i.id = ?""",
        "Payment received, thank you",
        "We received your payment of ${amount} for invoice {invoice_number} ({project_name}).",
    ),
    EventType.PROJECT_MILESTONE_COMPLETED: (
        """SELECT p.client_id, p.project_name, m.title
           FROM milestones m JOIN projects p ON p.id = m.project_id WHERE m.id = ?""",
        "Milestone completed",
        'The milestone "{title}" for "{project_name}" has been completed.',
    ),
}


class WorkflowAutomations:
    """Domain listeners registered on the bus at startup."""

    def __init__(
        self,
        bus: EventBus,
        store: Store,
        invoices: InvoiceService,
        email: EmailService,
        audit: AuditLogger,
        milestones: MilestoneGenerator,
        reminders: SchedulerService | None = None,
    ) -> None:
        self._bus = bus
        self._store = store
        self._invoices = invoices
        self._email = email
        self._audit = audit
        self._milestones = milestones
        self._reminders = reminders
        self._registered = False

    def register(self) -> None:
        """Subscribe every handler once; later calls are no-ops."""
        if self._registered:
            return
        on = self._bus.on
        on(EventType.PROPOSAL_ACCEPTED, self.handle_proposal_accepted)
        on(EventType.CONTRACT_SIGNED, self.handle_contract_signed)
        on(EventType.PROJECT_MILESTONE_COMPLETED, self.handle_milestone_completed)
        on(EventType.INVOICE_SENT, self.handle_invoice_sent)
        for event_type in CLIENT_NOTIFICATIONS:
            on(event_type, self.notify_client)
        if self._reminders is not None:
            on(EventType.CONTRACT_SENT, self.handle_contract_sent)
            on(EventType.CONTRACT_SIGNED, self.handle_contract_resolved)
            on(EventType.CONTRACT_EXPIRED, self.handle_contract_expired)
            on(EventType.CLIENT_ACTIVATED, self.handle_client_activated)
            on(EventType.CLIENT_DEACTIVATED, self.handle_client_deactivated)
        self._registered = True
        logger.info("Registered workflow automations")

    # ------------------------------------------------------------------
    # proposal.accepted
    # ------------------------------------------------------------------

    async def handle_proposal_accepted(self, event: Event) -> None:
        payload = event.payload(ProposalAccepted)
        proposal = self._store.fetch_one(
            """SELECT id, project_id, client_id, project_name, project_type, final_price, description
               FROM proposal_requests WHERE id = ? AND deleted_at IS NULL""",
            (payload.entity_id,),
        )
        if proposal is None:
            logger.warning("proposal.accepted: proposal %d not found", payload.entity_id)
            return

        if proposal["project_id"]:
            self._store.execute(
                """UPDATE projects SET
                       price = COALESCE(?, price),
                       project_type = COALESCE(?, project_type),
                       description = COALESCE(?, description),
                       updated_at = ?
                   WHERE id = ?""",
                (proposal["final_price"], proposal["project_type"], proposal["description"],
                 iso_now(), proposal["project_id"]),
            )
            logger.info(
                "proposal.accepted: proposal %d already linked to project %d; refreshed it",
                proposal["id"], proposal["project_id"],
            )
            return

        name = proposal["project_name"] or (
            f"{proposal['project_type'] or 'Web'} Project - {utc_today():%b %Y}"
        )
        with self._store.transaction():
            project_id = self._store.insert(
                """INSERT INTO projects
                   (client_id, project_name, project_type, description, status, price, start_date)
                   VALUES (?, ?, ?, ?, 'active', ?, ?)""",
                (proposal["client_id"], name, proposal["project_type"], proposal["description"],
                 proposal["final_price"], utc_today().isoformat()),
            )
            self._store.execute(
                "UPDATE proposal_requests SET project_id = ?, status = 'accepted' WHERE id = ?",
                (project_id, proposal["id"]),
            )
            generated = self._milestones.generate_default_milestones(project_id, proposal["project_type"])

        logger.info(
            "proposal.accepted: created project %d from proposal %d (%d milestones)",
            project_id, proposal["id"], generated.milestones_created,
        )
        self._audit.log_create(
            "project", project_id, name,
            {"client_id": proposal["client_id"], "status": "active", "price": proposal["final_price"]},
            source="proposal.accepted", proposal_id=proposal["id"],
        )
        await self._bus.emit(EventType.PROJECT_CREATED, {
            "entity_id": project_id,
            "client_id": proposal["client_id"],
            "proposal_id": proposal["id"],
            "project_type": proposal["project_type"],
            "triggered_by": payload.triggered_by or "workflow-automation",
        })

    # ------------------------------------------------------------------
    # contract.signed
    # ------------------------------------------------------------------

    async def handle_contract_signed(self, event: Event) -> None:
        payload = event.payload(ContractSigned)
        project_id = self._project_for_contract(payload)
        if project_id is None:
            logger.warning("contract.signed: no project for contract %s", payload.contract_id or payload.entity_id)
            return

        project = self._store.fetch_one(
            "SELECT id, status, project_name FROM projects WHERE id = ? AND deleted_at IS NULL",
            (project_id,),
        )
        if project is None:
            logger.warning("contract.signed: project %d not found", project_id)
            return
        if project["status"] in ACTIVE_OR_LATER:
            logger.info("contract.signed: project %d already %s", project_id, project["status"])
            return

        now = iso_now()
        with self._store.transaction():
            self._store.execute(
                """UPDATE projects
                   SET status = 'active', contract_signed_at = COALESCE(contract_signed_at, ?),
                       updated_at = ?
                   WHERE id = ?""",
                (now, now, project_id),
            )
            self._store.execute(
                """INSERT INTO contract_signature_log (project_id, action, actor_email, details)
                   VALUES (?, 'project_activated', ?, ?)""",
                (project_id, payload.signer_email, dump_json({
                    "previous_status": project["status"],
                    "new_status": "active",
                    "contract_id": payload.contract_id,
                    "signer_name": payload.signer_name,
                })),
            )

        self._audit.log_status_change(
            "project", project_id, project["project_name"], project["status"], "active",
            reason="contract_signed",
        )
        logger.info("contract.signed: project %d %s -> active", project_id, project["status"])
        await self._bus.emit(EventType.PROJECT_STATUS_CHANGED, {
            "entity_id": project_id,
            "previous_status": project["status"],
            "new_status": "active",
            "reason": "contract_signed",
            "triggered_by": payload.triggered_by,
        })

    def _project_for_contract(self, payload: ContractSigned) -> int | None:
        if payload.project_id:
            return payload.project_id
        contract_id = payload.contract_id or payload.entity_id
        if contract_id is None:
            return None
        return self._store.fetch_value("SELECT project_id FROM contracts WHERE id = ?", (contract_id,))

    # ------------------------------------------------------------------
    # project.milestone_completed
    # ------------------------------------------------------------------

    async def handle_milestone_completed(self, event: Event) -> None:
        payload = event.payload(MilestoneCompleted)
        milestone = self._store.fetch_one(
            """SELECT m.id, m.project_id, m.title, m.is_payment_milestone, m.invoice_amount,
                      p.client_id, p.project_name
               FROM milestones m JOIN projects p ON p.id = m.project_id
               WHERE m.id = ? AND p.deleted_at IS NULL""",
            (payload.entity_id,),
        )
        if milestone is None:
            logger.warning("milestone_completed: milestone %d not found", payload.entity_id)
            return

        line_items = self._priced_deliverables(milestone["id"])
        title = (milestone["title"] or "").lower()
        is_payment = (
            bool(line_items)
            or bool(milestone["is_payment_milestone"])
            or any(keyword in title for keyword in PAYMENT_KEYWORDS)
        )
        if not is_payment:
            logger.debug("milestone_completed: milestone %d is not a payment milestone", milestone["id"])
            return

        if not line_items and (milestone["invoice_amount"] or 0) > 0:
            line_items = [LineItem(
                description=f"{milestone['title']} ({milestone['project_name']})",
                rate=milestone["invoice_amount"],
            )]
        if not line_items:
            logger.info(
                "milestone_completed: payment milestone %d has no amount; invoice it manually",
                milestone["id"],
            )
            return

        if self._invoices.invoice_exists_for_milestone(milestone["id"]):
            logger.info("milestone_completed: milestone %d already invoiced", milestone["id"])
            return

        invoice = self._invoices.create_milestone_invoice(milestone["id"], InvoiceCreate(
            project_id=milestone["project_id"],
            client_id=milestone["client_id"],
            line_items=line_items,
            notes=f"Invoice for completed milestone: {milestone['title']}",
            terms=DEFAULT_TERMS,
        ))
        logger.info(
            "milestone_completed: created invoice %s for milestone %d", invoice.invoice_number, milestone["id"]
        )
        await self._bus.emit(EventType.INVOICE_CREATED, {
            "entity_id": invoice.id,
            "project_id": invoice.project_id,
            "client_id": invoice.client_id,
            "milestone_id": milestone["id"],
            "amount": invoice.amount_total,
            "invoice_number": invoice.invoice_number,
            "triggered_by": "workflow-automation",
        })

    def _priced_deliverables(self, milestone_id: int) -> list[LineItem]:
        rows = self._store.fetch_all(
            "SELECT title, price FROM deliverables WHERE milestone_id = ? AND price > 0 ORDER BY id",
            (milestone_id,),
        )
        return [LineItem(description=row["title"], rate=row["price"]) for row in rows]

    # ------------------------------------------------------------------
    # Client notifications
    # ------------------------------------------------------------------

    async def notify_client(self, event: Event) -> None:
        """Send the client-facing email for the event, if the client has an address."""
        sql, subject, message = CLIENT_NOTIFICATIONS[event.event_type]
        entity_id = event.entity_id
        if event.event_type is EventType.CONTRACT_SIGNED:
            entity_id = self._project_for_contract(event.payload(ContractSigned))
        if entity_id is None:
            logger.warning("%s: no entity id to notify about", event.event_type.value)
            return

        row = self._store.fetch_one(sql, (entity_id,))
        if row is None:
            logger.warning("%s: %d not found; no notification sent", event.event_type.value, entity_id)
            return
        contact = self.get_client_contact(row["client_id"])
        if contact is None:
            logger.warning(
                "%s: client %s has no email; notification skipped", event.event_type.value, row["client_id"]
            )
            return

        values = {k: ("" if v is None else v) for k, v in row.items()}
        try:
            await self._email.send_template(
                contact["email"],
                "client_notification",
                subject=subject,
                message=message.format(**values),
                client_name=contact["name"],
            )
        except EmailDeliveryError:
            logger.exception("%s: failed to email client %s", event.event_type.value, row["client_id"])

    def get_client_contact(self, client_id: int | None) -> dict[str, Any] | None:
        if client_id is None:
            return None
        row = self._store.fetch_one(
            "SELECT email, contact_name, company_name FROM clients WHERE id = ?", (client_id,)
        )
        if row is None or not row["email"]:
            return None
        return {"email": row["email"], "name": row["contact_name"] or row["company_name"] or "there"}

    # ------------------------------------------------------------------
    # Reminder bookkeeping
    # ------------------------------------------------------------------

    async def handle_invoice_sent(self, event: Event) -> None:
        payload = event.payload(InvoiceEvent)
        try:
            count = self._invoices.schedule_reminders(payload.entity_id)
        except InvoiceNotFoundError:
            logger.warning("invoice.sent: invoice %d not found", payload.entity_id)
            return
        logger.info("invoice.sent: scheduled %d reminder(s) for invoice %d", count, payload.entity_id)

    async def handle_contract_sent(self, event: Event) -> None:
        self._reminders.schedule_contract_reminders(event.payload(ContractSent).project_id)

    async def handle_contract_resolved(self, event: Event) -> None:
        project_id = self._project_for_contract(event.payload(ContractSigned))
        if project_id is not None:
            self._reminders.cancel_contract_reminders(project_id)

    async def handle_contract_expired(self, event: Event) -> None:
        self._reminders.expire_contract_reminders(event.payload(ContractExpired).project_id)

    async def handle_client_activated(self, event: Event) -> None:
        self._reminders.start_welcome_sequence(event.payload(ClientEvent).entity_id)

    async def handle_client_deactivated(self, event: Event) -> None:
        self._reminders.cancel_welcome_sequence(event.payload(ClientEvent).entity_id)


def register_workflow_automations(
    bus: EventBus,
    store: Store,
    invoices: InvoiceService,
    email: EmailService,
    audit: AuditLogger,
    milestones: MilestoneGenerator,
    reminders: SchedulerService | None = None,
) -> WorkflowAutomations:
    """Build the automation handlers and subscribe them to the bus."""
    automations = WorkflowAutomations(bus, store, invoices, email, audit, milestones, reminders)
    automations.register()
    return automations
