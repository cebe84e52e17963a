from __future__ import annotations

from datetime import date, timedelta

import pytest

from bootstrap import build_services
from core.bus import WorkflowTriggerService
from core.clock import utc_today
from core.config import AppConfig
from core.data.store import Store, dump_json
from core.models.events import Event
from core.models.triggers import ActionType, TriggerDraft
from core.protocols import DeliveryResult
from core.registry import PluginRegistry
from workflow.triggers import TriggerStore


class RecordingEmailSender:
    """Keeps every message; addresses in `fail_for` are refused."""

    name = "recording"

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict] = []
        self.fail_for = fail_for or set()

    async def send(self, to: str, subject: str, text: str, html: str | None = None) -> DeliveryResult:
        if to in self.fail_for:
            return DeliveryResult(success=False, sender=self.name, message="refused")
        self.sent.append({"to": to, "subject": subject, "text": text})
        return DeliveryResult(success=True, sender=self.name, message_id=f"msg-{len(self.sent)}")

    def to(self, address: str) -> list[dict]:
        return [message for message in self.sent if message["to"] == address]


class RecordingAction:
    """Trigger action that remembers its calls, optionally failing."""

    def __init__(self, name: str, error: Exception | None = None, journal: list | None = None) -> None:
        self.name = name
        self.error = error
        self.calls: list[tuple[dict, Event]] = []
        self.journal = journal if journal is not None else []

    async def execute(self, config: dict, event: Event) -> None:
        self.calls.append((config, event))
        self.journal.append(config.get("tag", self.name))
        if self.error is not None:
            raise self.error


class Seeder:
    """Inserts domain rows with sensible defaults."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def client(self, email: str | None = "client@example.com", status: str = "active", name: str = "Dana") -> int:
        return self.store.insert(
            "INSERT INTO clients (contact_name, company_name, email, status) VALUES (?, ?, ?, ?)",
            (name, "Acme Ltd", email, status),
        )

    def project(self, client_id: int, status: str = "pending", **fields) -> int:
        values = {"project_name": "Website Redesign", "project_type": "business-site", **fields}
        columns = ", ".join(["client_id", "status", *values])
        placeholders = ", ".join("?" for _ in range(len(values) + 2))
        return self.store.insert(
            f"INSERT INTO projects ({columns}) VALUES ({placeholders})",
            (client_id, status, *values.values()),
        )

    def proposal(self, client_id: int, project_id: int | None = None, **fields) -> int:
        values = {
            "project_name": "New Storefront",
            "project_type": "ecommerce-site",
            "final_price": 12000.0,
            "description": "Online store",
            **fields,
        }
        columns = ", ".join(["client_id", "project_id", *values])
        placeholders = ", ".join("?" for _ in range(len(values) + 2))
        return self.store.insert(
            f"INSERT INTO proposal_requests ({columns}) VALUES ({placeholders})",
            (client_id, project_id, *values.values()),
        )

    def milestone(self, project_id: int, title: str = "Design", **fields) -> int:
        values = {"title": title, **fields}
        columns = ", ".join(["project_id", *values])
        placeholders = ", ".join("?" for _ in range(len(values) + 1))
        return self.store.insert(
            f"INSERT INTO milestones ({columns}) VALUES ({placeholders})",
            (project_id, *values.values()),
        )

    def deliverable(self, project_id: int, milestone_id: int, title: str, price: float | None) -> int:
        return self.store.insert(
            "INSERT INTO deliverables (project_id, milestone_id, title, price) VALUES (?, ?, ?, ?)",
            (project_id, milestone_id, title, price),
        )

    def invoice(
        self,
        client_id: int,
        project_id: int,
        number: str,
        status: str = "sent",
        due: date | None = None,
        total: float = 500.0,
    ) -> int:
        due = due or utc_today()
        return self.store.insert(
            """INSERT INTO invoices
               (invoice_number, project_id, client_id, amount_total, status, issued_date, due_date, line_items)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (number, project_id, client_id, total, status, (due - timedelta(days=14)).isoformat(),
             due.isoformat(), dump_json([{"description": "Work", "rate": total, "amount": total}])),
        )

    def invoice_reminder(self, invoice_id: int, reminder_type: str = "due", scheduled: date | None = None) -> int:
        return self.store.insert(
            "INSERT INTO invoice_reminders (invoice_id, reminder_type, scheduled_date) VALUES (?, ?, ?)",
            (invoice_id, reminder_type, (scheduled or utc_today()).isoformat()),
        )

    def count(self, table: str, where: str = "1 = 1", params: tuple = ()) -> int:
        return self.store.fetch_value(f"SELECT COUNT(*) FROM {table} WHERE {where}", params, default=0)


def draft(event_type: str, action: ActionType = ActionType.NOTIFY, **fields) -> TriggerDraft:
    return TriggerDraft(name=fields.pop("name", f"{event_type} rule"), event_type=event_type,
                        action_type=action, **fields)


@pytest.fixture
def store(tmp_path):
    store = Store(tmp_path / "test.sqlite")
    yield store
    store.close()


@pytest.fixture
def seed(store) -> Seeder:
    return Seeder(store)


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry()


@pytest.fixture
def triggers(store) -> TriggerStore:
    return TriggerStore(store)


@pytest.fixture
def bus(triggers, registry) -> WorkflowTriggerService:
    return WorkflowTriggerService(triggers, registry, max_chain_depth=8)


@pytest.fixture
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
async def services(tmp_path, sender):
    config = AppConfig(home_dir=str(tmp_path / "home"))
    services = build_services(config, sender=sender)
    yield services
    await services.close()


@pytest.fixture
def app_seed(services) -> Seeder:
    return Seeder(services.store)
