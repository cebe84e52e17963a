"""Invoice service -- creation, reminders, overdue marking and generation runs.

Generation runs (scheduled and recurring) process each source row
independently: a row that fails is logged and left for the next run.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import Any

from pydantic import ValidationError

from core.clock import add_months, iso_now, parse_date, utc_today
from core.data.store import Store, dump_json, load_json
from core.models.invoices import (
    REMINDER_OFFSETS,
    Frequency,
    Invoice,
    InvoiceCreate,
    InvoiceReminder,
    LineItem,
)

logger = logging.getLogger(__name__)

DEFAULT_TERMS = "Payment due within 14 days of receipt."
OPEN_STATUSES = ("sent", "viewed", "partial")


class InvoiceNotFoundError(LookupError):
    pass


def calculate_next_generation_date(
    frequency: Frequency,
    current: date,
    day_of_month: int | None = None,
) -> date:
    """Next run date after `current` for a recurring schedule."""
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency == "monthly":
        return add_months(current, 1, day_of_month)
    if frequency == "quarterly":
        return add_months(current, 3, day_of_month)
    raise ValueError(f"Unknown recurring frequency: {frequency!r}")


class InvoiceService:
    def __init__(self, store: Store) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        issued = data.issued_date or utc_today()
        total = round(sum(item.amount or 0 for item in data.line_items), 2)
        with self._store.transaction():
            number = self._next_invoice_number(issued.year)
            invoice_id = self._store.insert(
                """INSERT INTO invoices
                   (invoice_number, project_id, client_id, milestone_id, amount_total,
                    status, issued_date, due_date, line_items, notes, terms)
                   VALUES (?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?, ?)""",
                (
                    number,
                    data.project_id,
                    data.client_id,
                    data.milestone_id,
                    total,
                    issued.isoformat(),
                    (issued + timedelta(days=data.due_days)).isoformat(),
                    dump_json([item.model_dump() for item in data.line_items]),
                    data.notes,
                    data.terms or DEFAULT_TERMS,
                ),
            )
        logger.info("Created invoice %s (%d) for project %d: %.2f", number, invoice_id, data.project_id, total)
        return self.get_invoice_by_id(invoice_id)

    def create_milestone_invoice(self, milestone_id: int, data: InvoiceCreate) -> Invoice:
        return self.create_invoice(data.model_copy(update={"milestone_id": milestone_id}))

    def get_invoice_by_id(self, invoice_id: int) -> Invoice:
        row = self._store.fetch_one(
            "SELECT * FROM invoices WHERE id = ? AND deleted_at IS NULL", (invoice_id,)
        )
        if row is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return self._row_to_invoice(row)

    def invoice_exists_for_milestone(self, milestone_id: int) -> bool:
        found = self._store.fetch_value(
            "SELECT 1 FROM invoices WHERE milestone_id = ? AND deleted_at IS NULL LIMIT 1",
            (milestone_id,),
        )
        return found is not None

    def check_and_mark_overdue(self) -> list[int]:
        """Flip open invoices past their due date to 'overdue'; returns their ids."""
        today = utc_today().isoformat()
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        with self._store.transaction():
            ids = [
                row["id"]
                for row in self._store.fetch_all(
                    f"""SELECT id FROM invoices
                        WHERE status IN ({placeholders}) AND due_date < ? AND deleted_at IS NULL""",
                    (*OPEN_STATUSES, today),
                )
            ]
            if ids:
                self._store.execute(
                    f"""UPDATE invoices SET status = 'overdue', updated_at = ?
                        WHERE id IN ({", ".join("?" for _ in ids)})""",
                    (iso_now(), *ids),
                )
        if ids:
            logger.info("Marked %d invoice(s) overdue", len(ids))
        return ids

    # ------------------------------------------------------------------
    # Payment reminders
    # ------------------------------------------------------------------

    def schedule_reminders(self, invoice_id: int) -> int:
        """Replace pending reminders with one per reminder type still in the future."""
        invoice = self.get_invoice_by_id(invoice_id)
        if invoice.due_date is None:
            logger.warning("Invoice %d has no due date; no reminders scheduled", invoice_id)
            return 0
        today = utc_today()
        created = 0
        with self._store.transaction():
            self._store.execute(
                "DELETE FROM invoice_reminders WHERE invoice_id = ? AND status = 'pending'",
                (invoice_id,),
            )
            for reminder_type, offset in REMINDER_OFFSETS.items():
                when = invoice.due_date + timedelta(days=offset)
                if when < today:
                    continue
                self._store.execute(
                    """INSERT INTO invoice_reminders (invoice_id, reminder_type, scheduled_date)
                       VALUES (?, ?, ?)""",
                    (invoice_id, reminder_type, when.isoformat()),
                )
                created += 1
        return created

    def process_reminders(self) -> list[InvoiceReminder]:
        """Pending reminders due today or earlier for invoices still unpaid."""
        rows = self._store.fetch_all(
            """SELECT r.* FROM invoice_reminders r
               JOIN invoices i ON i.id = r.invoice_id
               WHERE r.status = 'pending'
                 AND r.scheduled_date <= ?
                 AND i.status NOT IN ('paid', 'cancelled', 'draft')
                 AND i.deleted_at IS NULL
               ORDER BY r.scheduled_date, r.id""",
            (utc_today().isoformat(),),
        )
        return [InvoiceReminder.model_validate(row) for row in rows]

    def mark_reminder_sent(self, reminder_id: int) -> None:
        self._store.execute(
            "UPDATE invoice_reminders SET status = 'sent', sent_at = ? WHERE id = ?",
            (iso_now(), reminder_id),
        )

    def mark_reminder_failed(self, reminder_id: int) -> None:
        self._store.execute(
            "UPDATE invoice_reminders SET status = 'failed' WHERE id = ?", (reminder_id,)
        )

    def skip_reminder(self, reminder_id: int) -> None:
        self._store.execute(
            "UPDATE invoice_reminders SET status = 'skipped' WHERE id = ?", (reminder_id,)
        )

    # ------------------------------------------------------------------
    # Generation runs
    # ------------------------------------------------------------------

    def process_scheduled_invoices(self) -> list[Invoice]:
        rows = self._store.fetch_all(
            """SELECT * FROM scheduled_invoices
               WHERE status = 'pending' AND trigger_type = 'date' AND scheduled_date <= ?
               ORDER BY scheduled_date, id""",
            (utc_today().isoformat(),),
        )
        generated: list[Invoice] = []
        for row in rows:
            try:
                with self._store.transaction():
                    invoice = self.create_invoice(self._draft_from(row))
                    self._store.execute(
                        """UPDATE scheduled_invoices SET status = 'generated', generated_invoice_id = ?
                           WHERE id = ?""",
                        (invoice.id, row["id"]),
                    )
                generated.append(invoice)
            except (sqlite3.Error, ValidationError, InvoiceNotFoundError):
                logger.exception("Failed to generate scheduled invoice %d", row["id"])
        return generated

    def process_recurring_invoices(self) -> list[Invoice]:
        today = utc_today()
        rows = self._store.fetch_all(
            """SELECT * FROM recurring_invoices
               WHERE is_active = 1 AND next_generation_date <= ?
                 AND (end_date IS NULL OR end_date >= ?)
               ORDER BY next_generation_date, id""",
            (today.isoformat(), today.isoformat()),
        )
        generated: list[Invoice] = []
        for row in rows:
            try:
                next_date = calculate_next_generation_date(
                    row["frequency"], parse_date(row["next_generation_date"]), row["day_of_month"]
                )
                still_active = row["end_date"] is None or next_date <= parse_date(row["end_date"])
                # The invoice and the advanced schedule commit together or not at all
                with self._store.transaction():
                    invoice = self.create_invoice(self._draft_from(row))
                    self._store.execute(
                        """UPDATE recurring_invoices
                           SET next_generation_date = ?, last_generated_at = ?, is_active = ?
                           WHERE id = ?""",
                        (next_date.isoformat(), iso_now(), int(still_active), row["id"]),
                    )
                generated.append(invoice)
            except (sqlite3.Error, ValidationError, ValueError, InvoiceNotFoundError):
                logger.exception("Failed to generate recurring invoice %d", row["id"])
        return generated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_invoice_number(self, year: int) -> str:
        prefix = f"INV-{year}-"
        # Numeric order: INV-2026-10000 must sort after INV-2026-9999
        last = self._store.fetch_value(
            """SELECT MAX(CAST(substr(invoice_number, ?) AS INTEGER))
               FROM invoices WHERE invoice_number LIKE ?""",
            (len(prefix) + 1, f"{prefix}%"),
        )
        sequence = int(last) + 1 if last else 1
        return f"{prefix}{sequence:04d}"

    @staticmethod
    def _draft_from(row: dict[str, Any]) -> InvoiceCreate:
        return InvoiceCreate(
            project_id=row["project_id"],
            client_id=row["client_id"],
            line_items=[LineItem.model_validate(item) for item in load_json(row["line_items"], [])],
            notes=row["notes"],
            terms=row["terms"],
        )

    @staticmethod
    def _row_to_invoice(row: dict[str, Any]) -> Invoice:
        data = dict(row)
        data["line_items"] = load_json(row["line_items"], [])
        return Invoice.model_validate(data)
