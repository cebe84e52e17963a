"""WorkflowTriggerService -- the in-process event bus.

`emit` does three things, in order:

1. persists the event to ``system_events``;
2. runs every listener registered for the event type, each isolated so a
   failing listener never stops its siblings;
3. runs the active declarative triggers for the type, highest priority
   first, and writes one ``workflow_trigger_logs`` row per executed trigger.

Listeners may emit again. Emits made while a listener is handling an event
join that event's causation chain (same correlation id, depth + 1); chains
deeper than ``max_chain_depth`` are dropped and logged.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from contextvars import ContextVar

from pydantic import BaseModel, ValidationError

from core.models.events import Event, EventContext, EventType, InvalidEventError, payload_model_for
from core.protocols import Listener
from core.registry import PluginRegistry
from workflow.conditions import evaluate
from workflow.triggers import TriggerStore

logger = logging.getLogger(__name__)

# Event currently being handled in this task, if any
_current_event: ContextVar[Event | None] = ContextVar("workflow_current_event", default=None)


class WorkflowTriggerService:
    """SQLite-backed emit/on bus with declarative triggers.

    Implements the EventBus protocol.

    Usage:
        bus = WorkflowTriggerService(triggers=TriggerStore(store), registry=registry)
        bus.on("contract.signed", handle_contract_signed)
        await bus.emit("contract.signed", {"project_id": 7})
    """

    def __init__(
        self,
        triggers: TriggerStore,
        registry: PluginRegistry,
        max_chain_depth: int = 8,
    ) -> None:
        self._triggers = triggers
        self._registry = registry
        self._max_chain_depth = max_chain_depth
        self._listeners: dict[EventType, list[Listener]] = {}

    @property
    def name(self) -> str:
        return "workflow_bus"

    async def emit(
        self,
        event_type: EventType | str,
        context: dict | EventContext | None = None,
    ) -> Event | None:
        """Record an event and run its listeners and triggers.

        Raises InvalidEventError for an unknown type or a context that does
        not fit the type's payload model. Everything after validation is
        logged and swallowed. Returns the event, or None if the chain
        depth cap dropped it.
        """
        etype = EventType.parse(event_type)
        payload = self._validate(etype, context)

        parent = _current_event.get()
        if parent is None:
            event = Event(
                event_type=etype,
                context=payload,
                triggered_by=payload.get("triggered_by") or "system",
            )
        else:
            event = parent.derive(etype, payload)

        if event.depth > self._max_chain_depth:
            logger.error(
                "Dropping %s: chain depth %d exceeds %d [correlation=%s chain=%s]",
                etype.value,
                event.depth,
                self._max_chain_depth,
                event.correlation_id,
                " -> ".join((*event.lineage, etype.value)),
            )
            return None

        try:
            self._triggers.record_event(event)
        except sqlite3.Error:
            logger.exception("Failed to record event %s [id=%s]", etype.value, event.id)

        token = _current_event.set(event)
        try:
            await self._run_listeners(event)
            await self._run_triggers(event)
        finally:
            _current_event.reset(token)
        return event

    def on(self, event_type: EventType | str, listener: Listener) -> None:
        """Register a listener; every listener for the type runs on each emit."""
        etype = EventType.parse(event_type)
        self._listeners.setdefault(etype, []).append(listener)
        logger.debug("Subscribed to '%s': %s", etype.value, listener)

    def off(self, event_type: EventType | str, listener: Listener) -> None:
        """Remove a previously registered listener."""
        etype = EventType.parse(event_type)
        listeners = self._listeners.get(etype, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(ls) for ls in self._listeners.values())
        return len(self._listeners.get(EventType.parse(event_type), []))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(etype: EventType, context: dict | BaseModel | None) -> dict:
        raw = context.model_dump() if isinstance(context, BaseModel) else dict(context or {})
        model = payload_model_for(etype)
        try:
            return model.model_validate(raw).model_dump(mode="json")
        except ValidationError as exc:
            raise InvalidEventError(f"Invalid context for {etype.value}: {exc}") from exc

    async def _run_listeners(self, event: Event) -> None:
        listeners = list(self._listeners.get(event.event_type, []))
        if not listeners:
            logger.debug("No listeners for event type: %s", event.event_type.value)
            return

        logger.debug(
            "Dispatching %s to %d listener(s) [correlation=%s depth=%d]",
            event.event_type.value,
            len(listeners),
            event.correlation_id,
            event.depth,
        )
        tasks = [asyncio.create_task(self._safe_invoke(listener, event)) for listener in listeners]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_invoke(self, listener: Listener, event: Event) -> None:
        """Invoke a listener, catching and logging any exceptions."""
        try:
            await listener(event)
        except Exception:
            logger.exception(
                "Error in listener %s for %s [correlation=%s]",
                getattr(listener, "__qualname__", listener),
                event.event_type.value,
                event.correlation_id,
            )

    async def _run_triggers(self, event: Event) -> None:
        try:
            triggers = self._triggers.active_for(event.event_type)
        except sqlite3.Error:
            logger.exception("Failed to load triggers for %s", event.event_type.value)
            return

        for trigger in triggers:
            if not evaluate(trigger.conditions, event.context, event.event_type):
                logger.debug("Trigger %d (%s) conditions not met", trigger.id, trigger.name)
                continue

            started = time.perf_counter()
            error: str | None = None
            try:
                action = self._registry.action(trigger.action_type.value)
                await action.execute(trigger.action_config, event)
                logger.info(
                    "Trigger %d (%s) ran %s for %s",
                    trigger.id, trigger.name, trigger.action_type.value, event.event_type.value,
                )
            except Exception as exc:
                logger.exception(
                    "Trigger %d (%s) failed for %s", trigger.id, trigger.name, event.event_type.value
                )
                error = str(exc) or exc.__class__.__name__

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            try:
                self._triggers.record_execution(trigger, event, error, elapsed_ms)
            except sqlite3.Error:
                logger.exception("Failed to record execution of trigger %d", trigger.id)
