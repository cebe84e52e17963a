"""Service wiring -- builds every component once and hands out the container.

Nothing in the codebase reaches for a global instance; main.py, the CLI and
the tests all call `build_services` and pass the pieces where needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from core.bus import WorkflowTriggerService
from core.config import AppConfig
from core.data.store import Store
from core.protocols import EmailSender
from core.registry import PluginRegistry
from scheduler.service import SchedulerService
from services.approvals import ApprovalService
from services.audit import AuditLogger
from services.email import EmailService, build_sender
from services.invoices import InvoiceService
from services.milestones import MilestoneGenerator
from services.priority_escalation import PriorityEscalationService
from services.soft_delete import SoftDeleteService
from services.users import UserService
from workflow.actions import builtin_actions
from workflow.automations import WorkflowAutomations, register_workflow_automations
from workflow.triggers import TriggerStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: Store
    registry: PluginRegistry
    triggers: TriggerStore
    bus: WorkflowTriggerService
    email: EmailService
    audit: AuditLogger
    users: UserService
    invoices: InvoiceService
    scheduler: SchedulerService
    automations: WorkflowAutomations

    async def close(self) -> None:
        """Stop the scheduler and release network clients and the database."""
        await self.scheduler.stop()
        for component in (*self.registry.get_all("action"), *self.registry.get_all("email_sender")):
            close = getattr(component, "close", None)
            if close is None:
                continue
            try:
                await close()
            except (httpx.HTTPError, RuntimeError) as exc:
                logger.error("Error closing %s: %s", component.name, exc)
        self.store.close()


def build_services(
    config: AppConfig,
    sender: EmailSender | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Services:
    """Construct and wire every service for one process."""
    store = Store(config.database_path)
    registry = PluginRegistry()

    triggers = TriggerStore(store)
    bus = WorkflowTriggerService(triggers, registry, max_chain_depth=config.workflow.max_chain_depth)
    registry.register("event_bus", bus)

    sender = sender or build_sender(config.email)
    registry.register("email_sender", sender)
    email = EmailService(sender, config.workflow)

    audit = AuditLogger(store)
    users = UserService(store)
    invoices = InvoiceService(store)

    for action in builtin_actions(
        store,
        email,
        users,
        admin_email=config.workflow.admin_email,
        http_client=http_client,
        webhook_timeout=config.workflow.webhook_timeout,
    ):
        registry.register("action", action)

    scheduler = SchedulerService(
        config.scheduler,
        store,
        bus,
        invoices,
        email,
        SoftDeleteService(store),
        PriorityEscalationService(store),
        ApprovalService(store),
    )
    automations = register_workflow_automations(
        bus, store, invoices, email, audit, MilestoneGenerator(store), reminders=scheduler
    )

    logger.info("Components: %s", registry.summary())
    return Services(
        config=config,
        store=store,
        registry=registry,
        triggers=triggers,
        bus=bus,
        email=email,
        audit=audit,
        users=users,
        invoices=invoices,
        scheduler=scheduler,
        automations=automations,
    )
