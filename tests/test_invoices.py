from __future__ import annotations

from datetime import date, timedelta

import pytest

from core.clock import utc_today
from core.models.invoices import InvoiceCreate, LineItem
from services.invoices import InvoiceNotFoundError, InvoiceService, calculate_next_generation_date


@pytest.fixture
def invoices(store) -> InvoiceService:
    return InvoiceService(store)


def test_next_generation_date_by_frequency():
    start = date(2026, 1, 15)
    assert calculate_next_generation_date("weekly", start) == date(2026, 1, 22)
    assert calculate_next_generation_date("monthly", start) == date(2026, 2, 15)
    assert calculate_next_generation_date("quarterly", start) == date(2026, 4, 15)


def test_monthly_date_is_clamped_to_month_end():
    assert calculate_next_generation_date("monthly", date(2026, 1, 31)) == date(2026, 2, 28)
    # A preferred day of month is restored once the month is long enough
    assert calculate_next_generation_date("monthly", date(2026, 2, 28), day_of_month=31) == date(2026, 3, 31)
    assert calculate_next_generation_date("quarterly", date(2026, 11, 30)) == date(2027, 2, 28)


def test_unknown_frequency_is_rejected():
    with pytest.raises(ValueError):
        calculate_next_generation_date("yearly", date(2026, 1, 1))


def test_invoice_numbers_are_sequential_per_year(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)

    def create(issued: date):
        return invoices.create_invoice(InvoiceCreate(
            project_id=project_id,
            client_id=client_id,
            line_items=[LineItem(description="Build", quantity=2, rate=150)],
            issued_date=issued,
        ))

    first = create(date(2026, 3, 1))
    second = create(date(2026, 3, 2))
    other_year = create(date(2027, 1, 5))

    assert first.invoice_number == "INV-2026-0001"
    assert second.invoice_number == "INV-2026-0002"
    assert other_year.invoice_number == "INV-2027-0001"
    assert first.amount_total == 300
    assert first.due_date == date(2026, 3, 15)
    assert first.status == "draft"


def test_missing_invoice_raises(invoices):
    with pytest.raises(InvoiceNotFoundError):
        invoices.get_invoice_by_id(42)


def test_reminders_skip_dates_already_past(invoices, seed):
    client_id = seed.client()
    invoice_id = seed.invoice(client_id, seed.project(client_id), "INV-2026-0001",
                              due=utc_today() - timedelta(days=5))

    created = invoices.schedule_reminders(invoice_id)

    types = [row["reminder_type"] for row in seed.store.fetch_all(
        "SELECT reminder_type FROM invoice_reminders ORDER BY scheduled_date"
    )]
    assert created == 3
    assert types == ["overdue_7", "overdue_14", "overdue_30"]


def test_rescheduling_replaces_only_pending_reminders(invoices, seed):
    client_id = seed.client()
    invoice_id = seed.invoice(client_id, seed.project(client_id), "INV-2026-0001",
                              due=utc_today() + timedelta(days=10))

    invoices.schedule_reminders(invoice_id)
    seed.store.execute("UPDATE invoice_reminders SET status = 'sent' WHERE reminder_type = 'upcoming'")
    invoices.schedule_reminders(invoice_id)

    assert seed.count("invoice_reminders", "status = 'pending'") == 6
    assert seed.count("invoice_reminders", "status = 'sent'") == 1


def test_due_reminders_exclude_paid_and_draft_invoices(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    open_reminder = seed.invoice_reminder(seed.invoice(client_id, project_id, "INV-2026-0001"))
    seed.invoice_reminder(seed.invoice(client_id, project_id, "INV-2026-0002", status="paid"))
    seed.invoice_reminder(seed.invoice(client_id, project_id, "INV-2026-0003", status="draft"))
    seed.invoice_reminder(seed.invoice(client_id, project_id, "INV-2026-0004"),
                          scheduled=utc_today() + timedelta(days=1))

    assert [r.id for r in invoices.process_reminders()] == [open_reminder]


def test_recurring_invoice_advances_and_ends(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    today = utc_today()
    seed.store.execute(
        """INSERT INTO recurring_invoices
           (project_id, client_id, frequency, line_items, start_date, end_date, next_generation_date)
           VALUES (?, ?, 'weekly', '[{"description": "Retainer", "rate": 400}]', ?, ?, ?)""",
        (project_id, client_id, today.isoformat(), (today + timedelta(days=3)).isoformat(), today.isoformat()),
    )

    [invoice] = invoices.process_recurring_invoices()

    assert invoice.amount_total == 400
    row = seed.store.fetch_one("SELECT * FROM recurring_invoices")
    assert row["next_generation_date"] == (today + timedelta(days=7)).isoformat()
    assert row["is_active"] == 0
    assert invoices.process_recurring_invoices() == []


def test_broken_scheduled_row_does_not_block_others(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    today = utc_today().isoformat()
    seed.store.execute(
        "INSERT INTO scheduled_invoices (project_id, client_id, scheduled_date, line_items) VALUES (?, ?, ?, ?)",
        (project_id, client_id, today, '[{"rate": 10}]'),
    )
    seed.store.execute(
        "INSERT INTO scheduled_invoices (project_id, client_id, scheduled_date, line_items) VALUES (?, ?, ?, ?)",
        (project_id, client_id, today, '[{"description": "Launch", "rate": 10}]'),
    )

    generated = invoices.process_scheduled_invoices()

    assert len(generated) == 1
    assert seed.count("scheduled_invoices", "status = 'pending'") == 1


def test_recurring_row_with_bad_frequency_creates_no_invoice(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    today = utc_today().isoformat()
    seed.store.execute(
        """INSERT INTO recurring_invoices
           (project_id, client_id, frequency, line_items, start_date, next_generation_date)
           VALUES (?, ?, 'yearly', '[{"description": "Hosting", "rate": 90}]', ?, ?)""",
        (project_id, client_id, today, today),
    )

    assert invoices.process_recurring_invoices() == []
    assert invoices.process_recurring_invoices() == []
    assert seed.count("invoices") == 0


def test_failed_source_update_rolls_back_the_invoice(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    today = utc_today().isoformat()
    seed.store.execute(
        "INSERT INTO scheduled_invoices (project_id, client_id, scheduled_date, line_items) VALUES (?, ?, ?, ?)",
        (project_id, client_id, today, '[{"description": "Launch", "rate": 10}]'),
    )
    seed.store.execute(
        """CREATE TRIGGER block_generated BEFORE UPDATE ON scheduled_invoices
           BEGIN SELECT RAISE(ABORT, 'scheduled_invoices is read-only'); END"""
    )

    assert invoices.process_scheduled_invoices() == []
    assert seed.count("invoices") == 0
    assert seed.count("scheduled_invoices", "status = 'pending'") == 1

    seed.store.execute("DROP TRIGGER block_generated")
    [invoice] = invoices.process_scheduled_invoices()
    assert invoice.invoice_number.endswith("-0001")


def test_invoice_numbers_sort_numerically_past_four_digits(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    draft = InvoiceCreate(
        project_id=project_id,
        client_id=client_id,
        line_items=[LineItem(description="Build", rate=100)],
        issued_date=date(2026, 6, 1),
    )
    first = invoices.create_invoice(draft)
    seed.store.execute("UPDATE invoices SET invoice_number = 'INV-2026-9999' WHERE id = ?", (first.id,))

    assert invoices.create_invoice(draft).invoice_number == "INV-2026-10000"
    assert invoices.create_invoice(draft).invoice_number == "INV-2026-10001"


def test_overdue_marking_only_touches_open_invoices(invoices, seed):
    client_id = seed.client()
    project_id = seed.project(client_id)
    past = utc_today() - timedelta(days=1)
    late = seed.invoice(client_id, project_id, "INV-2026-0001", due=past)
    seed.invoice(client_id, project_id, "INV-2026-0002", due=past, status="paid")
    seed.invoice(client_id, project_id, "INV-2026-0003", due=past, status="draft")

    assert invoices.check_and_mark_overdue() == [late]
    assert invoices.check_and_mark_overdue() == []
