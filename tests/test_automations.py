from __future__ import annotations

from core.models.events import EventType


def events_of(services, event_type: str) -> list[dict]:
    return services.store.fetch_all(
        "SELECT * FROM system_events WHERE event_type = ? ORDER BY timestamp", (event_type,)
    )


# ---------------------------------------------------------------------------
# proposal.accepted
# ---------------------------------------------------------------------------

async def test_accepted_proposal_creates_and_links_one_project(services, app_seed):
    client_id = app_seed.client()
    proposal_id = app_seed.proposal(client_id)

    await services.bus.emit(EventType.PROPOSAL_ACCEPTED, {"entity_id": proposal_id, "client_id": client_id})

    [project] = services.store.fetch_all("SELECT * FROM projects")
    assert project["project_name"] == "New Storefront"
    assert project["status"] == "active"
    assert project["price"] == 12000.0
    linked = services.store.fetch_value("SELECT project_id FROM proposal_requests WHERE id = ?", (proposal_id,))
    assert linked == project["id"]
    assert app_seed.count("milestones", "project_id = ?", (project["id"],)) == 5

    [created] = events_of(services, "project.created")
    assert created["entity_id"] == project["id"]
    assert created["depth"] == 1
    assert services.audit.entries_for("project", project["id"])[0]["action"] == "create"


async def test_second_acceptance_updates_instead_of_duplicating(services, app_seed):
    client_id = app_seed.client()
    proposal_id = app_seed.proposal(client_id)
    await services.bus.emit("proposal.accepted", {"entity_id": proposal_id})

    services.store.execute("UPDATE proposal_requests SET final_price = 15000 WHERE id = ?", (proposal_id,))
    await services.bus.emit("proposal.accepted", {"entity_id": proposal_id})

    assert app_seed.count("projects") == 1
    assert services.store.fetch_value("SELECT price FROM projects") == 15000
    assert len(events_of(services, "project.created")) == 1


async def test_unnamed_proposal_gets_a_generated_project_name(services, app_seed):
    proposal_id = app_seed.proposal(app_seed.client(), project_name=None, project_type="web-app")

    await services.bus.emit("proposal.accepted", {"entity_id": proposal_id})

    name = services.store.fetch_value("SELECT project_name FROM projects")
    assert name.startswith("web-app Project - ")


async def test_missing_proposal_is_a_no_op(services, app_seed):
    await services.bus.emit("proposal.accepted", {"entity_id": 404})

    assert app_seed.count("projects") == 0
    assert app_seed.count("system_events") == 1


# ---------------------------------------------------------------------------
# contract.signed
# ---------------------------------------------------------------------------

async def test_signed_contract_activates_project(services, app_seed):
    project_id = app_seed.project(app_seed.client(), status="pending")
    services.scheduler.schedule_contract_reminders(project_id)

    await services.bus.emit("contract.signed", {"project_id": project_id, "signer_email": "dana@example.com"})

    project = services.store.fetch_one("SELECT * FROM projects WHERE id = ?", (project_id,))
    assert project["status"] == "active"
    assert project["contract_signed_at"] is not None
    log = services.store.fetch_one("SELECT * FROM contract_signature_log WHERE project_id = ?", (project_id,))
    assert log["action"] == "project_activated"
    assert log["actor_email"] == "dana@example.com"
    [changed] = events_of(services, "project.status_changed")
    assert changed["entity_id"] == project_id
    assert app_seed.count("contract_reminders", "status = 'pending'") == 0
    assert app_seed.count("contract_reminders", "status = 'skipped'") == 4


async def test_signed_contract_resolves_project_through_contract_row(services, app_seed):
    project_id = app_seed.project(app_seed.client(), status="pending")
    contract_id = services.store.insert("INSERT INTO contracts (project_id) VALUES (?)", (project_id,))

    await services.bus.emit("contract.signed", {"contract_id": contract_id})

    assert services.store.fetch_value("SELECT status FROM projects WHERE id = ?", (project_id,)) == "active"


async def test_signing_an_active_project_changes_nothing(services, app_seed):
    project_id = app_seed.project(app_seed.client(), status="active", updated_at="2020-01-01T00:00:00")

    await services.bus.emit("contract.signed", {"project_id": project_id})

    project = services.store.fetch_one("SELECT * FROM projects WHERE id = ?", (project_id,))
    assert project["updated_at"] == "2020-01-01T00:00:00"
    assert project["contract_signed_at"] is None
    assert events_of(services, "project.status_changed") == []
    assert app_seed.count("contract_signature_log") == 0


# ---------------------------------------------------------------------------
# project.milestone_completed
# ---------------------------------------------------------------------------

async def test_payment_milestone_is_invoiced_once(services, app_seed, sender):
    client_id = app_seed.client()
    project_id = app_seed.project(client_id)
    milestone_id = app_seed.milestone(project_id, "Design")
    app_seed.deliverable(project_id, milestone_id, "Mockups", 800)
    app_seed.deliverable(project_id, milestone_id, "Style guide", 200)
    app_seed.deliverable(project_id, milestone_id, "Moodboard", None)

    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})
    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})

    [invoice] = services.store.fetch_all("SELECT * FROM invoices")
    assert invoice["milestone_id"] == milestone_id
    assert invoice["amount_total"] == 1000
    assert invoice["status"] == "draft"
    assert len(events_of(services, "invoice.created")) == 1


async def test_flagged_milestone_uses_its_invoice_amount(services, app_seed):
    project_id = app_seed.project(app_seed.client())
    milestone_id = app_seed.milestone(project_id, "Kickoff", is_payment_milestone=1, invoice_amount=2500)

    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})

    assert services.store.fetch_value("SELECT amount_total FROM invoices") == 2500


async def test_plain_milestone_creates_no_invoice(services, app_seed):
    project_id = app_seed.project(app_seed.client())
    milestone_id = app_seed.milestone(project_id, "Content Integration")

    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})

    assert app_seed.count("invoices") == 0


async def test_payment_keyword_without_amount_is_left_for_manual_invoicing(services, app_seed):
    project_id = app_seed.project(app_seed.client())
    milestone_id = app_seed.milestone(project_id, "Final payment")

    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})

    assert app_seed.count("invoices") == 0


# ---------------------------------------------------------------------------
# Notifications and reminder bookkeeping
# ---------------------------------------------------------------------------

async def test_paid_invoice_notifies_client(services, app_seed, sender):
    client_id = app_seed.client(email="dana@example.com")
    invoice_id = app_seed.invoice(client_id, app_seed.project(client_id), "INV-2026-0042", total=750)

    await services.bus.emit("invoice.paid", {"entity_id": invoice_id})

    [message] = sender.to("dana@example.com")
    assert message["subject"] == "Payment received, thank you"
    assert "$750.00" in message["text"]
    assert "INV-2026-0042" in message["text"]


async def test_client_without_email_gets_no_notification(services, app_seed, sender):
    client_id = app_seed.client(email=None)
    milestone_id = app_seed.milestone(app_seed.project(client_id), "Design")

    await services.bus.emit("project.milestone_completed", {"entity_id": milestone_id})

    assert sender.sent == []


async def test_sent_contract_schedules_reminders(services, app_seed):
    project_id = app_seed.project(app_seed.client())

    await services.bus.emit("contract.sent", {"project_id": project_id})

    assert app_seed.count("contract_reminders", "project_id = ? AND status = 'pending'", (project_id,)) == 4


async def test_sent_invoice_schedules_payment_reminders(services, app_seed):
    client_id = app_seed.client()
    invoice_id = app_seed.invoice(client_id, app_seed.project(client_id), "INV-2026-0001")

    await services.bus.emit("invoice.sent", {"entity_id": invoice_id})

    # Due today: the 'upcoming' reminder is already in the past
    assert app_seed.count("invoice_reminders", "invoice_id = ?", (invoice_id,)) == 5


async def test_client_activation_seeds_welcome_sequence_once(services, app_seed):
    client_id = app_seed.client()

    await services.bus.emit("client.activated", {"entity_id": client_id})
    await services.bus.emit("client.activated", {"entity_id": client_id})

    assert app_seed.count("welcome_sequence_emails", "client_id = ?", (client_id,)) == 4

    await services.bus.emit("client.deactivated", {"entity_id": client_id})
    assert app_seed.count("welcome_sequence_emails", "status = 'skipped'") == 4


async def test_register_is_idempotent(services):
    before = services.bus.listener_count()
    services.automations.register()
    assert services.bus.listener_count() == before
