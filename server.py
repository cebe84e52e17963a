"""Lightweight aiohttp server -- the admin HTTP API.

Routes cover health, scheduler status and manual job runs, event emission
and history, and trigger management. No framework magic, no middleware
stack.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web
from pydantic import ValidationError

from core.models.events import EventType, InvalidEventError
from core.models.triggers import Trigger, TriggerDraft
from scheduler.runner import UnknownJobError
from workflow.conditions import ConditionError, to_storage
from workflow.triggers import TriggerNotFoundError

if TYPE_CHECKING:
    from bootstrap import Services

logger = logging.getLogger(__name__)

SERVICES = web.AppKey("services", object)


def create_app(services: Services) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()
    app[SERVICES] = services

    app.router.add_get("/health", handle_health)
    app.router.add_get("/scheduler/status", handle_scheduler_status)
    app.router.add_post("/scheduler/jobs/{name}/run", handle_run_job)
    app.router.add_post("/events", handle_emit_event)
    app.router.add_get("/events", handle_list_events)
    app.router.add_get("/triggers", handle_list_triggers)
    app.router.add_post("/triggers", handle_create_trigger)
    # Registered before /triggers/{trigger_id} so 'logs' is not read as an id
    app.router.add_get("/triggers/logs", handle_trigger_logs)
    app.router.add_get("/triggers/{trigger_id}", handle_get_trigger)
    app.router.add_patch("/triggers/{trigger_id}", handle_update_trigger)
    app.router.add_delete("/triggers/{trigger_id}", handle_delete_trigger)
    app.router.add_post("/triggers/{trigger_id}/toggle", handle_toggle_trigger)
    app.router.add_get("/workflow/event-types", handle_event_types)
    app.router.add_get("/workflow/action-types", handle_action_types)

    return app


def _services(request: web.Request) -> Services:
    return request.app[SERVICES]


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text=json.dumps({"error": "Invalid JSON"}), content_type="application/json")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Expected a JSON object"}), content_type="application/json"
        )
    return body


def _trigger_id(request: web.Request) -> int:
    try:
        return int(request.match_info["trigger_id"])
    except ValueError:
        raise web.HTTPNotFound(text=json.dumps({"error": "Trigger not found"}), content_type="application/json")


def _trigger_json(trigger: Trigger) -> dict[str, Any]:
    data = trigger.model_dump(mode="json")
    data["conditions"] = to_storage(trigger.conditions)
    return data


def _limit(request: web.Request) -> int:
    try:
        return max(1, min(int(request.query.get("limit", 100)), 1000))
    except ValueError:
        return 100


# ---------------------------------------------------------------------------
# Health and scheduler
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    """GET /health -- health check."""
    services = _services(request)
    return web.json_response({
        "status": "ok",
        "scheduler_running": services.scheduler.runner.is_running,
        "components": services.registry.summary(),
    })


async def handle_scheduler_status(request: web.Request) -> web.Response:
    """GET /scheduler/status -- running flag, jobs and config."""
    status = _services(request).scheduler.get_status()
    return web.json_response(status.model_dump(mode="json"))


async def handle_run_job(request: web.Request) -> web.Response:
    """POST /scheduler/jobs/{name}/run -- run a job now and return its result."""
    name = request.match_info["name"]
    try:
        result = await _services(request).scheduler.trigger_job(name)
    except UnknownJobError:
        return _error(f"Unknown job: {name}", 404)
    status = 200 if result.status == "success" else 500
    return web.json_response(result.model_dump(mode="json"), status=status)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

async def handle_emit_event(request: web.Request) -> web.Response:
    """POST /events -- emit a domain event.

    Body: {"event_type": "invoice.paid", "context": {"entity_id": 12}}
    """
    body = await _json_body(request)
    if "event_type" not in body:
        return _error("Missing required field: event_type", 400)

    context = body.get("context") or {}
    context.setdefault("triggered_by", "admin-api")
    try:
        event = await _services(request).bus.emit(body["event_type"], context)
    except InvalidEventError as exc:
        return _error(str(exc), 400)

    if event is None:
        return _error("Event dropped: causation chain too deep", 409)
    return web.json_response({
        "id": event.id,
        "event_type": event.event_type.value,
        "correlation_id": event.correlation_id,
    }, status=201)


async def handle_list_events(request: web.Request) -> web.Response:
    """GET /events?event_type=...&limit=... -- recent system events."""
    event_type = request.query.get("event_type")
    try:
        etype = EventType.parse(event_type) if event_type else None
    except InvalidEventError as exc:
        return _error(str(exc), 400)
    events = _services(request).triggers.list_events(etype, limit=_limit(request))
    return web.json_response(events)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

async def handle_list_triggers(request: web.Request) -> web.Response:
    """GET /triggers?event_type=... -- all triggers, optionally for one type."""
    event_type = request.query.get("event_type")
    try:
        etype = EventType.parse(event_type) if event_type else None
    except InvalidEventError as exc:
        return _error(str(exc), 400)
    triggers = _services(request).triggers.list_triggers(etype)
    return web.json_response([_trigger_json(t) for t in triggers])


async def handle_create_trigger(request: web.Request) -> web.Response:
    """POST /triggers -- create a trigger.

    Body: {"name", "event_type", "conditions", "action_type", "action_config",
           "priority", "is_active", "description"}
    """
    body = await _json_body(request)
    try:
        draft = TriggerDraft.model_validate(body)
        trigger = _services(request).triggers.create_trigger(draft)
    except (ValidationError, ConditionError) as exc:
        return _error(str(exc), 400)
    return web.json_response(_trigger_json(trigger), status=201)


async def handle_get_trigger(request: web.Request) -> web.Response:
    try:
        trigger = _services(request).triggers.get_trigger(_trigger_id(request))
    except TriggerNotFoundError as exc:
        return _error(str(exc), 404)
    return web.json_response(_trigger_json(trigger))


async def handle_update_trigger(request: web.Request) -> web.Response:
    """PATCH /triggers/{id} -- partial update."""
    trigger_id = _trigger_id(request)
    body = await _json_body(request)
    try:
        trigger = _services(request).triggers.update_trigger(trigger_id, body)
    except TriggerNotFoundError as exc:
        return _error(str(exc), 404)
    except (ValidationError, ConditionError) as exc:
        return _error(str(exc), 400)
    return web.json_response(_trigger_json(trigger))


async def handle_delete_trigger(request: web.Request) -> web.Response:
    if not _services(request).triggers.delete_trigger(_trigger_id(request)):
        return _error("Trigger not found", 404)
    return web.json_response({"deleted": True})


async def handle_toggle_trigger(request: web.Request) -> web.Response:
    """POST /triggers/{id}/toggle -- flip is_active."""
    try:
        trigger = _services(request).triggers.toggle_trigger(_trigger_id(request))
    except TriggerNotFoundError as exc:
        return _error(str(exc), 404)
    return web.json_response(_trigger_json(trigger))


async def handle_trigger_logs(request: web.Request) -> web.Response:
    """GET /triggers/logs?trigger_id=...&limit=... -- execution history, newest first."""
    raw_id = request.query.get("trigger_id")
    try:
        trigger_id = int(raw_id) if raw_id else None
    except ValueError:
        return _error("trigger_id must be an integer", 400)
    logs = _services(request).triggers.list_logs(trigger_id, limit=_limit(request))
    return web.json_response([log.model_dump(mode="json") for log in logs])


async def handle_event_types(request: web.Request) -> web.Response:
    return web.json_response(_services(request).triggers.event_types())


async def handle_action_types(request: web.Request) -> web.Response:
    return web.json_response(_services(request).triggers.action_types())
