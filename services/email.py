"""Email service -- renders plain-text templates and hands them to a sender.

Two senders ship with the engine:

- ``log``: writes the message to the log (development, tests).
- ``http``: POSTs the message as JSON to a mail relay.

A failed delivery raises EmailDeliveryError so batch jobs can mark the
row as failed and move on.
"""

from __future__ import annotations

import logging
from uuid import uuid4

import httpx

from core.config import EmailConfig, WorkflowConfig
from core.protocols import DeliveryResult, EmailSender

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    """The configured sender could not deliver a message."""


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


TEMPLATES: dict[str, tuple[str, str]] = {
    "invoice_reminder": (
        "{reminder_label}: invoice {invoice_number}",
        "Hi {client_name},\n\n"
        "Invoice {invoice_number} for ${amount_due} {due_phrase}.\n\n"
        "View and pay it here: {portal_url}/invoices/{invoice_id}\n\n"
        "Thank you,\n{company_name}",
    ),
    "contract_reminder": (
        "{reminder_label}: please sign your contract for {project_name}",
        "Hi {client_name},\n\n"
        "Your contract for {project_name} is still waiting for a signature.\n"
        "Review and sign it here: {portal_url}/contracts/sign/{signature_token}\n\n"
        "{company_name}",
    ),
    "welcome": (
        "Welcome to {company_name}",
        "Hi {client_name},\n\n"
        "Welcome aboard. Your client portal is ready at {portal_url}.\n\n{company_name}",
    ),
    "getting_started": (
        "Getting started with your client portal",
        "Hi {client_name},\n\n"
        "Here is how to find your projects, invoices and messages: {portal_url}/dashboard\n\n"
        "{company_name}",
    ),
    "tips": (
        "A few tips for working together",
        "Hi {client_name},\n\n"
        "Upload files and answer questionnaires from the portal so nothing gets lost in email.\n\n"
        "{company_name}",
    ),
    "check_in": (
        "How is everything going?",
        "Hi {client_name},\n\n"
        "You have been with us for a week. Reply to this email if anything is unclear.\n\n"
        "{company_name}",
    ),
    "approval_reminder": (
        "Approval pending: {workflow_name}",
        "Hello,\n\n"
        "The {entity_type} #{entity_id} has been waiting for your approval for {days_pending} day(s).\n"
        "Review it here: {portal_url}/approvals/{request_id}\n\n{company_name}",
    ),
    "client_notification": (
        "{subject}",
        "Hi {client_name},\n\n{message}\n\n{portal_url}\n\n{company_name}",
    ),
}


class LogEmailSender:
    """Writes outgoing mail to the log instead of delivering it."""

    @property
    def name(self) -> str:
        return "log"

    async def send(self, to: str, subject: str, text: str, html: str | None = None) -> DeliveryResult:
        message_id = f"log_{uuid4().hex[:12]}"
        logger.info("Email to %s: %s [%s]", to, subject, message_id)
        logger.debug("Email body:\n%s", text)
        return DeliveryResult(success=True, sender=self.name, message="Logged", message_id=message_id)


class HttpEmailSender:
    """Delivers mail through an HTTP relay that accepts a JSON message."""

    def __init__(
        self,
        relay_url: str,
        from_address: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._relay_url = relay_url
        self._from_address = from_address
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @property
    def name(self) -> str:
        return "http"

    async def send(self, to: str, subject: str, text: str, html: str | None = None) -> DeliveryResult:
        body = {"from": self._from_address, "to": to, "subject": subject, "text": text}
        if html:
            body["html"] = html
        try:
            response = await self._client.post(self._relay_url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Email relay request failed for %s: %s", to, exc)
            return DeliveryResult(success=False, sender=self.name, message=str(exc))

        if not response.is_success:
            return DeliveryResult(
                success=False,
                sender=self.name,
                message=f"Relay returned {response.status_code}",
            )
        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")
        return DeliveryResult(success=True, sender=self.name, message="Delivered", message_id=message_id)

    async def close(self) -> None:
        await self._client.aclose()


class EmailService:
    """Front door for every outgoing email."""

    def __init__(self, sender: EmailSender, workflow: WorkflowConfig | None = None) -> None:
        self._sender = sender
        self._workflow = workflow or WorkflowConfig()

    @property
    def sender(self) -> EmailSender:
        return self._sender

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> DeliveryResult:
        if not to:
            raise EmailDeliveryError("No recipient address")
        result = await self._sender.send(to, subject, text, html)
        if not result.success:
            raise EmailDeliveryError(f"{result.sender}: {result.message}")
        return result

    async def send_template(self, to: str, template: str, **data: object) -> DeliveryResult:
        """Render a named template with `data` and send it."""
        subject, text = self.render(template, **data)
        return await self.send_email(to, subject, text)

    def render(self, template: str, **data: object) -> tuple[str, str]:
        if template not in TEMPLATES:
            raise KeyError(f"Unknown email template: {template}")
        values = _Blank(
            portal_url=self._workflow.portal_url.rstrip("/"),
            company_name=self._workflow.company_name,
        )
        values.update({k: "" if v is None else v for k, v in data.items()})
        subject, body = TEMPLATES[template]
        return subject.format_map(values), body.format_map(values)


def build_sender(config: EmailConfig) -> EmailSender:
    if config.provider == "http":
        if not config.relay_url:
            raise ValueError("email.relay_url is required when email.provider is 'http'")
        return HttpEmailSender(
            relay_url=config.relay_url,
            from_address=config.from_address,
            api_key=config.api_key,
            timeout=config.timeout,
        )
    return LogEmailSender()
