from __future__ import annotations

import json

import httpx
import pytest

from conftest import RecordingEmailSender
from core.models.events import Event, EventType
from services.email import EmailService
from services.users import UserService
from workflow.actions import (
    CreateTaskAction,
    NotifyAction,
    SendEmailAction,
    UpdateStatusAction,
    WebhookAction,
    interpolate,
)


def make_event(event_type: EventType, **context) -> Event:
    return Event(event_type=event_type, context=context)


def test_interpolate_resolves_paths_and_builtins():
    event = make_event(EventType.INVOICE_PAID, entity_id=7, client={"name": "Dana"})
    rendered = interpolate(
        {"text": "{{client.name}} paid #{{entity_id}} ({{event_type}})", "tags": ["{{missing}}", 3]},
        event,
    )
    assert rendered == {"text": "Dana paid #7 (invoice.paid)", "tags": ["", 3]}


async def test_webhook_posts_event_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    action = WebhookAction(client)
    event = make_event(EventType.INVOICE_CREATED, entity_id=12, amount=300.0)

    await action.execute({"url": "https://hooks.example.com/{{entity_id}}", "headers": {"X-Key": "k"}}, event)
    await action.close()

    [request] = seen
    assert str(request.url) == "https://hooks.example.com/12"
    assert request.headers["X-Key"] == "k"
    body = json.loads(request.content)
    assert body["event"] == "invoice.created"
    assert body["event_id"] == event.id
    assert body["data"]["amount"] == 300.0


async def test_webhook_uses_payload_template():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    action = WebhookAction(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await action.execute(
        {"url": "https://x.test/hook", "payload": {"text": "Invoice {{entity_id}} paid"}},
        make_event(EventType.INVOICE_PAID, entity_id=4),
    )
    assert bodies == [{"text": "Invoice 4 paid"}]


async def test_webhook_error_status_raises():
    action = WebhookAction(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))))
    with pytest.raises(httpx.HTTPStatusError):
        await action.execute({"url": "https://x.test/hook"}, make_event(EventType.TASK_CREATED))


async def test_webhook_requires_url():
    action = WebhookAction(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    with pytest.raises(ValueError):
        await action.execute({}, make_event(EventType.TASK_CREATED))


async def test_notify_stores_notification(store):
    event = make_event(EventType.PROJECT_COMPLETED, entity_id=3)
    await NotifyAction(store).execute({"channel": "ops", "message": "Project {{entity_id}} done"}, event)

    row = store.fetch_one("SELECT * FROM notifications")
    assert row["channel"] == "ops"
    assert row["message"] == "Project 3 done"
    assert row["event_id"] == event.id


async def test_create_task_on_event_project(store, seed):
    project_id = seed.project(seed.client())
    users = UserService(store)
    user_id = users.create_user("pm@example.com", "PM")
    action = CreateTaskAction(store, users)

    await action.execute(
        {"title": "Review {{event_type}}", "priority": "high", "due_days": 2, "assignee_email": "PM@example.com"},
        make_event(EventType.DELIVERABLE_SUBMITTED, entity_id=1, project_id=project_id),
    )

    task = store.fetch_one("SELECT * FROM project_tasks WHERE project_id = ?", (project_id,))
    assert task["title"] == "Review deliverable.submitted"
    assert task["priority"] == "high"
    assert task["assigned_to_user_id"] == user_id
    assert task["due_date"] is not None


async def test_create_task_needs_a_project(store):
    action = CreateTaskAction(store, UserService(store))
    with pytest.raises(ValueError):
        await action.execute({"title": "x"}, make_event(EventType.LEAD_CREATED))


async def test_update_status_uses_entity_id(store, seed):
    project_id = seed.project(seed.client())
    event = make_event(EventType.PROJECT_STARTED, entity_id=project_id)

    await UpdateStatusAction(store).execute({"status": "in-progress"}, event)

    assert store.fetch_value("SELECT status FROM projects WHERE id = ?", (project_id,)) == "in-progress"


async def test_update_status_rejects_unknown_entity_and_missing_rows(store):
    action = UpdateStatusAction(store)
    with pytest.raises(ValueError):
        await action.execute({"entity": "lead", "status": "won"}, make_event(EventType.LEAD_CONVERTED, entity_id=1))
    with pytest.raises(LookupError):
        await action.execute({"status": "paid"}, make_event(EventType.INVOICE_SENT, entity_id=999))


async def test_send_email_resolves_client_address(store, seed):
    client_id = seed.client(email="dana@example.com")
    sender = RecordingEmailSender()
    action = SendEmailAction(EmailService(sender), store, admin_email="admin@example.com")

    await action.execute(
        {"to": "client", "subject": "Invoice {{entity_id}}", "body": "Thanks"},
        make_event(EventType.INVOICE_PAID, entity_id=8, client_id=client_id),
    )
    await action.execute({"to": "admin", "subject": "Paid"}, make_event(EventType.INVOICE_PAID, entity_id=8))

    assert [m["to"] for m in sender.sent] == ["dana@example.com", "admin@example.com"]
    assert sender.sent[0]["subject"] == "Invoice 8"


async def test_send_email_without_recipient_sends_nothing(store):
    sender = RecordingEmailSender()
    action = SendEmailAction(EmailService(sender), store)

    await action.execute({"to": "admin"}, make_event(EventType.INVOICE_PAID, entity_id=8))

    assert sender.sent == []
