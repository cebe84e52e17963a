"""SchedulerService -- the batch jobs behind the cron runner.

Every job method can be called by a cron tick or directly by an operator
(`trigger_*`, `trigger_job`). Batch jobs handle rows one at a time: a row
that fails is marked failed and logged, and the batch continues.

Default cadence:

    reminders            hourly   invoice, contract and welcome emails
    invoice_generation   01:00    overdue check, scheduled, recurring
    soft_delete_cleanup  02:00
    analytics_cleanup    03:00
    priority_escalation  06:00
    approval_reminders   09:00
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from core.clock import iso_now, parse_date, utc_now, utc_today
from core.config import SchedulerConfig
from core.data.store import Store, dump_json
from core.duration import duration_seconds
from core.models.events import EventType
from core.models.invoices import Invoice
from core.models.jobs import JobResult, SchedulerStatus
from core.models.reminders import CONTRACT_REMINDER_TYPES
from core.models.results import (
    AnalyticsCleanupResult,
    EscalationResult,
    InvoiceGenerationResult,
    SoftDeleteResult,
)
from core.protocols import EventBus
from scheduler.runner import CronRunner
from services.approvals import ApprovalService
from services.email import EmailService
from services.invoices import InvoiceService
from services.priority_escalation import PriorityEscalationService
from services.soft_delete import SoftDeleteService

logger = logging.getLogger(__name__)

REMINDER_LABELS = {
    "upcoming": "Upcoming payment",
    "due": "Payment due today",
    "initial": "Contract ready",
    "final_14": "Final reminder",
}

ANALYTICS_TABLES = ("page_views", "interaction_events")


class SchedulerService:
    """Owns the cron runner and every scheduled batch operation."""

    def __init__(
        self,
        config: SchedulerConfig,
        store: Store,
        bus: EventBus,
        invoices: InvoiceService,
        email: EmailService,
        soft_delete: SoftDeleteService,
        escalation: PriorityEscalationService,
        approvals: ApprovalService,
        runner: CronRunner | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._bus = bus
        self._invoices = invoices
        self._email = email
        self._soft_delete = soft_delete
        self._escalation = escalation
        self._approvals = approvals
        self._runner = runner or CronRunner(
            check_interval=duration_seconds(config.check_interval),
            timezone=config.timezone,
        )
        self._register_jobs()

    @property
    def runner(self) -> CronRunner:
        return self._runner

    def _register_jobs(self) -> None:
        c = self._config
        add = self._runner.add_job
        add("reminders", c.reminder_check_interval, self.process_reminders,
            enabled=c.enable_reminders or c.enable_contract_reminders or c.enable_welcome_sequences,
            description="Invoice, contract and welcome emails")
        add("invoice_generation", c.invoice_generation_time, self._run_invoice_generation,
            description="Overdue check, then scheduled and recurring invoices")
        add("soft_delete_cleanup", c.soft_delete_cleanup_time, self.cleanup_soft_deleted,
            enabled=c.enable_soft_delete_cleanup, description="Purge expired soft-deleted rows")
        add("analytics_cleanup", c.analytics_cleanup_time, self.cleanup_analytics_data,
            enabled=c.enable_analytics_cleanup, description="Delete aged raw analytics")
        add("priority_escalation", c.priority_escalation_time, self.process_priority_escalation,
            enabled=c.enable_priority_escalation, description="Raise task priority near due dates")
        add("approval_reminders", c.approval_reminder_time, self.process_approval_reminders,
            enabled=c.enable_approval_reminders, description="Nudge pending approvers")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("Scheduler disabled in config")
            return
        await self._runner.start()

    async def stop(self) -> None:
        await self._runner.stop()

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._runner.is_running,
            jobs=self._runner.job_names(),
            config=self._config.model_dump(),
            details=self._runner.states(),
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def check_overdue_invoices(self) -> int:
        ids = self._invoices.check_and_mark_overdue()
        for invoice_id in ids:
            await self._bus.emit(EventType.INVOICE_OVERDUE, {"entity_id": invoice_id, "triggered_by": "scheduler"})
        return len(ids)

    async def process_scheduled_invoices(self) -> int:
        generated = self._invoices.process_scheduled_invoices()
        await self._announce(generated)
        return len(generated)

    async def process_recurring_invoices(self) -> int:
        generated = self._invoices.process_recurring_invoices()
        await self._announce(generated)
        return len(generated)

    async def _announce(self, invoices: list[Invoice]) -> None:
        for invoice in invoices:
            await self._bus.emit(EventType.INVOICE_CREATED, {
                "entity_id": invoice.id,
                "project_id": invoice.project_id,
                "client_id": invoice.client_id,
                "amount": invoice.amount_total,
                "invoice_number": invoice.invoice_number,
                "triggered_by": "scheduler",
            })

    async def _run_invoice_generation(self) -> dict[str, int]:
        overdue = await self.check_overdue_invoices()
        generated = await self._generate_invoices()
        return {"overdue": overdue, **generated.model_dump()}

    async def _generate_invoices(self) -> InvoiceGenerationResult:
        result = InvoiceGenerationResult()
        if self._config.enable_scheduled_invoices:
            result.scheduled = await self.process_scheduled_invoices()
        if self._config.enable_recurring_invoices:
            result.recurring = await self.process_recurring_invoices()
        return result

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def process_reminders(self) -> int:
        """Send every due reminder email; returns how many were sent."""
        sent = 0
        if self._config.enable_reminders:
            sent += await self.process_invoice_reminders()
        if self._config.enable_contract_reminders:
            sent += await self.process_contract_reminders()
        if self._config.enable_welcome_sequences:
            sent += await self.process_welcome_sequences()
        return sent

    async def process_invoice_reminders(self) -> int:
        today = utc_today()
        sent = 0
        for reminder in self._invoices.process_reminders():
            try:
                invoice = self._invoices.get_invoice_by_id(reminder.invoice_id)
                client = self._client(invoice.client_id)
                if client is None:
                    logger.warning("Invoice %s has no client email; reminder %d skipped",
                                   invoice.invoice_number, reminder.id)
                    self._invoices.skip_reminder(reminder.id)
                    continue

                if invoice.due_date is None or invoice.due_date >= today:
                    due_phrase = f"is due on {invoice.due_date}"
                else:
                    due_phrase = f"was due on {invoice.due_date} ({(today - invoice.due_date).days} days ago)"
                await self._email.send_template(
                    client["email"],
                    "invoice_reminder",
                    reminder_label=REMINDER_LABELS.get(reminder.reminder_type, "Payment overdue"),
                    client_name=client["name"],
                    invoice_number=invoice.invoice_number,
                    invoice_id=invoice.id,
                    amount_due=f"{invoice.amount_due:.2f}",
                    due_phrase=due_phrase,
                )
                self._invoices.mark_reminder_sent(reminder.id)
                sent += 1
            except Exception:
                logger.exception("Invoice reminder %d failed", reminder.id)
                self._invoices.mark_reminder_failed(reminder.id)
        if sent:
            logger.info("Sent %d invoice reminder(s)", sent)
        return sent

    def schedule_contract_reminders(self, project_id: int, sent_on: Any = None) -> int:
        """Replace pending contract reminders with one row per configured offset."""
        start = parse_date(sent_on) if sent_on is not None else utc_today()
        offsets = self._config.contract_reminder_offsets
        with self._store.transaction():
            self._store.execute(
                "DELETE FROM contract_reminders WHERE project_id = ? AND status = 'pending'", (project_id,)
            )
            for offset in offsets:
                self._store.execute(
                    """INSERT INTO contract_reminders (project_id, reminder_type, scheduled_date)
                       VALUES (?, ?, ?)""",
                    (project_id, CONTRACT_REMINDER_TYPES.get(offset, f"followup_{offset}"),
                     (start + timedelta(days=offset)).isoformat()),
                )
        logger.info("Scheduled %d contract reminder(s) for project %d", len(offsets), project_id)
        return len(offsets)

    def cancel_contract_reminders(self, project_id: int) -> int:
        return self._resolve_contract_reminders(project_id, "skipped")

    def expire_contract_reminders(self, project_id: int) -> int:
        return self._resolve_contract_reminders(project_id, "expired")

    def _resolve_contract_reminders(self, project_id: int, status: str) -> int:
        cursor = self._store.execute(
            "UPDATE contract_reminders SET status = ? WHERE project_id = ? AND status = 'pending'",
            (status, project_id),
        )
        if cursor.rowcount:
            logger.info("Marked %d contract reminder(s) %s for project %d", cursor.rowcount, status, project_id)
        return cursor.rowcount

    async def process_contract_reminders(self) -> int:
        rows = self._store.fetch_all(
            """SELECT r.id, r.project_id, r.reminder_type, p.project_name,
                      p.contract_signature_token, c.email, c.contact_name, c.company_name
               FROM contract_reminders r
               JOIN projects p ON p.id = r.project_id
               LEFT JOIN clients c ON c.id = p.client_id
               WHERE r.status = 'pending' AND r.scheduled_date <= ?
                 AND p.contract_signed_at IS NULL
                 AND p.contract_reminders_enabled = 1
                 AND p.deleted_at IS NULL
               ORDER BY r.scheduled_date, r.id""",
            (utc_today().isoformat(),),
        )
        sent = 0
        for row in rows:
            if not row["email"] or not row["contract_signature_token"]:
                logger.warning("Contract reminder %d skipped: no client email or signature link", row["id"])
                self._set_status("contract_reminders", row["id"], "skipped")
                continue
            try:
                await self._email.send_template(
                    row["email"],
                    "contract_reminder",
                    reminder_label=REMINDER_LABELS.get(row["reminder_type"], "Reminder"),
                    client_name=row["contact_name"] or row["company_name"] or "there",
                    project_name=row["project_name"],
                    signature_token=row["contract_signature_token"],
                )
            except Exception:
                logger.exception("Contract reminder %d failed", row["id"])
                self._set_status("contract_reminders", row["id"], "failed")
                continue
            with self._store.transaction():
                self._set_status("contract_reminders", row["id"], "sent")
                self._store.execute(
                    """INSERT INTO contract_signature_log (project_id, action, actor_email, details)
                       VALUES (?, 'reminder_sent', ?, ?)""",
                    (row["project_id"], row["email"], dump_json({"reminder_type": row["reminder_type"]})),
                )
            sent += 1
        if sent:
            logger.info("Sent %d contract reminder(s)", sent)
        return sent

    # ------------------------------------------------------------------
    # Welcome sequences
    # ------------------------------------------------------------------

    def start_welcome_sequence(self, client_id: int) -> int:
        """Seed the welcome emails for a client once; returns rows created."""
        today = utc_today()
        with self._store.transaction():
            claimed = self._store.execute(
                """UPDATE clients SET welcome_sequence_started_at = ?
                   WHERE id = ? AND welcome_sequence_started_at IS NULL AND deleted_at IS NULL""",
                (iso_now(), client_id),
            ).rowcount
            if not claimed:
                logger.info("Welcome sequence for client %d already started (or client missing)", client_id)
                return 0
            templates = self._store.fetch_all(
                """SELECT email_type, days_after_signup FROM welcome_sequence_templates
                   WHERE is_active = 1 ORDER BY sort_order, id"""
            )
            for template in templates:
                self._store.execute(
                    """INSERT INTO welcome_sequence_emails
                       (client_id, email_type, days_after_signup, scheduled_date)
                       VALUES (?, ?, ?, ?)""",
                    (client_id, template["email_type"], template["days_after_signup"],
                     (today + timedelta(days=template["days_after_signup"])).isoformat()),
                )
        logger.info("Started welcome sequence for client %d (%d emails)", client_id, len(templates))
        return len(templates)

    def cancel_welcome_sequence(self, client_id: int) -> int:
        cursor = self._store.execute(
            "UPDATE welcome_sequence_emails SET status = 'skipped' WHERE client_id = ? AND status = 'pending'",
            (client_id,),
        )
        return cursor.rowcount

    async def process_welcome_sequences(self) -> int:
        rows = self._store.fetch_all(
            """SELECT w.id, w.client_id, w.email_type, c.email, c.contact_name, c.company_name
               FROM welcome_sequence_emails w
               JOIN clients c ON c.id = w.client_id
               WHERE w.status = 'pending' AND w.scheduled_date <= ?
                 AND c.status IN ('active', 'pending') AND c.deleted_at IS NULL
               ORDER BY w.scheduled_date, w.id""",
            (utc_today().isoformat(),),
        )
        sent = 0
        touched: set[int] = set()
        for row in rows:
            touched.add(row["client_id"])
            if not row["email"]:
                self._set_status("welcome_sequence_emails", row["id"], "skipped")
                continue
            try:
                await self._email.send_template(
                    row["email"], row["email_type"],
                    client_name=row["contact_name"] or row["company_name"] or "there",
                )
            except Exception:
                logger.exception("Welcome email %d (%s) failed", row["id"], row["email_type"])
                self._set_status("welcome_sequence_emails", row["id"], "failed")
                continue
            self._set_status("welcome_sequence_emails", row["id"], "sent")
            sent += 1

        for client_id in touched:
            remaining = self._store.fetch_value(
                "SELECT COUNT(*) FROM welcome_sequence_emails WHERE client_id = ? AND status = 'pending'",
                (client_id,), default=0,
            )
            if not remaining:
                self._store.execute(
                    "UPDATE clients SET welcome_sequence_completed = 1 WHERE id = ?", (client_id,)
                )
        if sent:
            logger.info("Sent %d welcome email(s)", sent)
        return sent

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def process_approval_reminders(self) -> int:
        """Remind approvers once per configured day offset."""
        offsets = self._config.approval_reminder_days
        today = utc_today()
        sent = 0
        for request in self._approvals.pending_requests():
            count = request["reminder_count"] or 0
            if count >= len(offsets):
                continue
            days_pending = (today - parse_date(request["request_created_at"])).days
            if days_pending < offsets[count]:
                continue
            if request["reminder_sent_at"] and parse_date(request["reminder_sent_at"]) == today:
                continue
            try:
                await self._email.send_template(
                    request["approver_email"],
                    "approval_reminder",
                    workflow_name=request["workflow_name"] or f"{request['entity_type']} approval",
                    entity_type=request["entity_type"],
                    entity_id=request["entity_id"],
                    days_pending=days_pending,
                    request_id=request["request_id"],
                )
            except Exception:
                logger.exception("Approval reminder for request %d failed", request["request_id"])
                continue
            self._approvals.record_reminder(request["request_id"], request["approver_email"])
            sent += 1
        if sent:
            logger.info("Sent %d approval reminder(s)", sent)
        return sent

    # ------------------------------------------------------------------
    # Cleanup and escalation
    # ------------------------------------------------------------------

    async def cleanup_analytics_data(self) -> AnalyticsCleanupResult:
        cutoff = (utc_now() - timedelta(days=self._config.analytics_retention_days)).isoformat()
        counts = {}
        for table in ANALYTICS_TABLES:
            cursor = self._store.execute(
                f"DELETE FROM {table} WHERE datetime(created_at) < datetime(?)", (cutoff,)
            )
            counts[table] = cursor.rowcount
        result = AnalyticsCleanupResult(**counts)
        logger.info("Analytics cleanup: %s", result.model_dump())
        return result

    async def cleanup_soft_deleted(self) -> SoftDeleteResult:
        return self._soft_delete.permanently_delete_expired(self._config.soft_delete_retention_days)

    async def process_priority_escalation(self) -> EscalationResult:
        return self._escalation.escalate_all_projects()

    # ------------------------------------------------------------------
    # Manual triggers
    #
    # Each holds its job's runner lock: it waits for a cron run in
    # progress, and cron ticks skip the job while it runs.
    # ------------------------------------------------------------------

    async def trigger_invoice_generation(self) -> InvoiceGenerationResult:
        async with self._runner.guard("invoice_generation"):
            return await self._generate_invoices()

    async def trigger_priority_escalation(self) -> EscalationResult:
        async with self._runner.guard("priority_escalation"):
            return await self.process_priority_escalation()

    async def trigger_reminder_processing(self) -> int:
        async with self._runner.guard("reminders"):
            return await self.process_reminders()

    async def trigger_job(self, name: str) -> JobResult:
        """Run a named job now through the runner's overlap guard."""
        return await self._runner.run_job(name)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _client(self, client_id: int | None) -> dict[str, Any] | None:
        if client_id is None:
            return None
        row = self._store.fetch_one(
            "SELECT email, contact_name, company_name FROM clients WHERE id = ?", (client_id,)
        )
        if row is None or not row["email"]:
            return None
        return {"email": row["email"], "name": row["contact_name"] or row["company_name"] or "there"}

    def _set_status(self, table: str, row_id: int, status: str) -> None:
        sent_at = iso_now() if status == "sent" else None
        self._store.execute(
            f"UPDATE {table} SET status = ?, sent_at = COALESCE(?, sent_at) WHERE id = ?",
            (status, sent_at, row_id),
        )
