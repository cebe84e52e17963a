"""Built-in trigger actions.

Each action receives the trigger's ``action_config`` and the event. String
values in the config may contain ``{{path}}`` placeholders resolved against
the event context (dotted paths reach into nested objects). Raising from
`execute` marks the trigger execution as failed.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any

import httpx

from core.clock import utc_today
from core.data.store import Store
from core.models.events import Event
from services.email import EmailService
from services.users import UserService

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def interpolate(value: Any, event: Event) -> Any:
    """Replace {{path}} placeholders in strings, recursing into dicts and lists."""
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            found = _resolve(event, match.group(1))
            return "" if found is None else str(found)
        return _PLACEHOLDER.sub(replace, value)
    if isinstance(value, dict):
        return {k: interpolate(v, event) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(item, event) for item in value]
    return value


def _resolve(event: Event, path: str) -> Any:
    if path == "event_type":
        return event.event_type.value
    if path == "event_id":
        return event.id
    current: Any = event.context
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _context_id(event: Event, key: str, category: str) -> int | None:
    """An id from the context, or the event's entity id when it is about `category`."""
    value = event.context.get(key)
    if value is None and event.entity_type == category:
        value = event.entity_id
    return int(value) if value is not None else None


# ---------------------------------------------------------------------------
# send_email
# ---------------------------------------------------------------------------

class SendEmailAction:
    """config: {"to": "client" | "admin" | <address>, "subject": str, "body": str}"""

    def __init__(self, email: EmailService, store: Store, admin_email: str = "") -> None:
        self._email = email
        self._store = store
        self._admin_email = admin_email

    @property
    def name(self) -> str:
        return "send_email"

    async def execute(self, config: dict, event: Event) -> None:
        recipient = self._recipient(config.get("to", "client"), event)
        if not recipient:
            logger.warning("send_email: no recipient for %s (to=%s)", event.event_type.value, config.get("to"))
            return
        subject = interpolate(config.get("subject", "Update: {{event_type}}"), event)
        body = interpolate(config.get("body", ""), event)
        await self._email.send_email(recipient, subject, body)

    def _recipient(self, target: str, event: Event) -> str | None:
        if target == "admin":
            return self._admin_email or None
        if target != "client":
            return interpolate(target, event) or None
        if event.context.get("client_email"):
            return event.context["client_email"]
        client_id = _context_id(event, "client_id", "client")
        if client_id is not None:
            return self._store.fetch_value("SELECT email FROM clients WHERE id = ?", (client_id,))
        project_id = _context_id(event, "project_id", "project")
        if project_id is not None:
            return self._store.fetch_value(
                """SELECT c.email FROM projects p JOIN clients c ON c.id = p.client_id
                   WHERE p.id = ?""",
                (project_id,),
            )
        return None


# ---------------------------------------------------------------------------
# notify
# ---------------------------------------------------------------------------

class NotifyAction:
    """config: {"channel": str, "message": str}"""

    def __init__(self, store: Store) -> None:
        self._store = store

    @property
    def name(self) -> str:
        return "notify"

    async def execute(self, config: dict, event: Event) -> None:
        channel = config.get("channel", "admin")
        message = interpolate(config.get("message", "{{event_type}}"), event)
        self._store.execute(
            """INSERT INTO notifications (channel, message, event_type, event_id)
               VALUES (?, ?, ?, ?)""",
            (channel, message, event.event_type.value, event.id),
        )
        logger.info("Notification [%s]: %s", channel, message)


# ---------------------------------------------------------------------------
# create_task
# ---------------------------------------------------------------------------

class CreateTaskAction:
    """config: {"title", "description", "priority", "due_days", "assignee_email"}"""

    def __init__(self, store: Store, users: UserService) -> None:
        self._store = store
        self._users = users

    @property
    def name(self) -> str:
        return "create_task"

    async def execute(self, config: dict, event: Event) -> None:
        project_id = _context_id(event, "project_id", "project")
        if project_id is None:
            raise ValueError(f"create_task needs a project_id in the {event.event_type.value} context")

        assignee_id = self._users.get_user_id_by_email(config.get("assignee_email"))
        due_date = None
        if config.get("due_days") is not None:
            due_date = (utc_today() + timedelta(days=int(config["due_days"]))).isoformat()

        task_id = self._store.insert(
            """INSERT INTO project_tasks
               (project_id, title, description, priority, assigned_to_user_id, due_date)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                project_id,
                interpolate(config.get("title", "Follow up on {{event_type}}"), event),
                interpolate(config.get("description"), event),
                config.get("priority", "medium"),
                assignee_id,
                due_date,
            ),
        )
        logger.info("Created task %d on project %d from %s", task_id, project_id, event.event_type.value)


# ---------------------------------------------------------------------------
# update_status
# ---------------------------------------------------------------------------

STATUS_TABLES = {
    "project": "projects",
    "invoice": "invoices",
    "client": "clients",
}


class UpdateStatusAction:
    """config: {"entity": "project" | "invoice" | "client", "status": str}"""

    def __init__(self, store: Store) -> None:
        self._store = store

    @property
    def name(self) -> str:
        return "update_status"

    async def execute(self, config: dict, event: Event) -> None:
        entity = config.get("entity", event.entity_type)
        table = STATUS_TABLES.get(entity)
        if table is None:
            raise ValueError(f"update_status cannot update entity {entity!r}")
        status = config.get("status")
        if not status:
            raise ValueError("update_status needs a 'status' in its config")
        entity_id = _context_id(event, f"{entity}_id", entity)
        if entity_id is None:
            raise ValueError(f"No {entity} id in the {event.event_type.value} context")

        cursor = self._store.execute(f"UPDATE {table} SET status = ? WHERE id = ?", (status, entity_id))
        if cursor.rowcount == 0:
            raise LookupError(f"{entity} {entity_id} not found")
        logger.info("Set %s %d status to %s", entity, entity_id, status)


# ---------------------------------------------------------------------------
# webhook
# ---------------------------------------------------------------------------

class WebhookAction:
    """config: {"url": str, "method": "POST", "headers": {...}, "payload": {...}}

    Without a payload template the whole event is sent.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "webhook"

    async def execute(self, config: dict, event: Event) -> None:
        url = interpolate(config.get("url", ""), event)
        if not url:
            raise ValueError("webhook needs a 'url' in its config")

        if "payload" in config:
            body = interpolate(config["payload"], event)
        else:
            body = {
                "event": event.event_type.value,
                "event_id": event.id,
                "timestamp": event.timestamp.isoformat(),
                "data": event.context,
            }
        response = await self._client.request(
            config.get("method", "POST").upper(),
            url,
            json=body,
            headers=config.get("headers") or None,
        )
        response.raise_for_status()
        logger.info("Webhook %s -> %d", url, response.status_code)

    async def close(self) -> None:
        await self._client.aclose()


def builtin_actions(
    store: Store,
    email: EmailService,
    users: UserService,
    admin_email: str = "",
    http_client: httpx.AsyncClient | None = None,
    webhook_timeout: float = 10.0,
) -> list:
    return [
        SendEmailAction(email, store, admin_email),
        NotifyAction(store),
        CreateTaskAction(store, users),
        UpdateStatusAction(store),
        WebhookAction(http_client, timeout=webhook_timeout),
    ]
