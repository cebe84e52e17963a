"""Core protocols -- the extension points of the workflow engine.

The core imports these protocols; actions and senders implement them.
All protocols use structural subtyping (typing.Protocol): if your class has
the right methods, it implements the protocol. No inheritance required.
"""

from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol, runtime_checkable

from core.models.events import Event, EventContext, EventType

Listener = Callable[[Event], Coroutine[Any, Any, None]]


# ---------------------------------------------------------------------------
# 1. EventBus -- in-process domain event fan-out
# ---------------------------------------------------------------------------

@runtime_checkable
class EventBus(Protocol):
    """Emit/subscribe bus. Domain code emits; automation handlers listen.

    Default implementation: WorkflowTriggerService (SQLite-backed event log
    plus declarative triggers).
    """

    async def emit(
        self, event_type: EventType | str, context: dict | EventContext | None = None
    ) -> Event | None:
        """Record an event, run its listeners, then its matching triggers."""
        ...

    def on(self, event_type: EventType | str, listener: Listener) -> None:
        """Register a listener for one event type."""
        ...

    def off(self, event_type: EventType | str, listener: Listener) -> None:
        """Remove a previously registered listener."""
        ...


# ---------------------------------------------------------------------------
# 2. TriggerAction -- what a declarative trigger does when it fires
# ---------------------------------------------------------------------------

@runtime_checkable
class TriggerAction(Protocol):
    """Executes one action type for a matching trigger.

    Raising marks the trigger execution as failed; the error message is
    stored in the execution log.
    """

    @property
    def name(self) -> str:
        """Action type this executor handles, e.g. 'send_email', 'webhook'."""
        ...

    async def execute(self, config: dict, event: Event) -> None:
        """Perform the action with the trigger's action_config."""
        ...


# ---------------------------------------------------------------------------
# 3. EmailSender -- outbound mail transport
# ---------------------------------------------------------------------------

@runtime_checkable
class EmailSender(Protocol):
    """Delivers a rendered email. Examples: log-only sender, HTTP relay."""

    @property
    def name(self) -> str:
        """Sender name, matched against email.provider in config."""
        ...

    async def send(
        self, to: str, subject: str, text: str, html: str | None = None
    ) -> DeliveryResult:
        """Deliver one message and report the outcome."""
        ...


class DeliveryResult:
    """Result of an EmailSender.send() call."""

    def __init__(self, success: bool, sender: str, message: str = "", message_id: str | None = None):
        self.success = success
        self.sender = sender
        self.message = message
        self.message_id = message_id

    def __repr__(self) -> str:
        status = "ok" if self.success else "failed"
        return f"DeliveryResult({status}, {self.sender})"
