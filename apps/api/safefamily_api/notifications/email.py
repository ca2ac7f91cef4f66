"""Operator notifications (signup summaries and provisioning alerts).

Providers:
- ResendEmailNotifier: Resend HTTP API (production)
- LogNotifier: logs the message instead of sending it (dev / unconfigured)
"""

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from safefamily_api.config.settings import ProvisioningConfig
from safefamily_api.entitlements.apps import AppId, sorted_apps
from safefamily_api.utils.sanitize import hash_email

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
STRIPE_DASHBOARD_SEARCH_URL = "https://dashboard.stripe.com/search?query="


class NotificationError(Exception):
    """The notification channel failed to accept a message."""


@dataclass(frozen=True)
class NotificationMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


@runtime_checkable
class Notifier(Protocol):
    """Minimal interface for notification channels."""

    name: str

    async def send(self, message: NotificationMessage) -> None:
        """Deliver the message.

        Raises:
            NotificationError: If the channel rejects or cannot be reached.
        """
        ...


class LogNotifier:
    """Development notifier that logs messages instead of sending them."""

    name = "log"

    async def send(self, message: NotificationMessage) -> None:
        logger.info(
            "NOTIFICATION_LOGGED",
            extra={"notification_subject": message.subject, "notification_body": message.text_body},
        )


class ResendEmailNotifier:
    """Send notifications through the Resend email API."""

    name = "resend"

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self._transport = transport

    async def send(self, message: NotificationMessage) -> None:
        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html_body,
            "text": message.text_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(RESEND_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Resend unreachable: {type(e).__name__}") from e

        if not response.is_success:
            raise NotificationError(f"Resend rejected message: HTTP {response.status_code}")

        logger.info(
            "NOTIFICATION_SENT",
            extra={"provider": self.name, "notification_subject": message.subject},
        )


def get_notifier(config: ProvisioningConfig) -> Notifier:
    """Resend when an API key and recipient are configured, otherwise log only."""
    if config.resend_api_key and config.admin_notification_email:
        return ResendEmailNotifier(
            api_key=config.resend_api_key,
            from_email=config.notification_from_email,
        )
    logger.warning("NOTIFIER_FALLBACK_TO_LOG", extra={"reason": "resend not configured"})
    return LogNotifier()


# ============================================================================
# Rendering
# ============================================================================


def format_amount(amount: int) -> str:
    """Minor units to a dollar string: 999 -> '$9.99'."""
    return f"${amount / 100:.2f}"


def plan_label(amount: int) -> str:
    if amount >= 9900:
        return "Yearly ($99/year)"
    if amount >= 999:
        return "Monthly ($9.99/mo)"
    if amount >= 799:
        return "2-App Monthly ($7.99/mo)"
    return f"Unknown ({format_amount(amount)})"


def stripe_dashboard_link(email: str) -> str:
    return f"{STRIPE_DASHBOARD_SEARCH_URL}{quote(email, safe='')}"


def app_display_names(apps: Iterable[AppId]) -> list[str]:
    return [app.display_name for app in sorted_apps(apps)]


def render_signup_notification(
    *,
    to: str,
    email: str,
    customer_name: Optional[str],
    amount: int,
    apps: Iterable[AppId],
    provisioned: bool,
    now: Optional[datetime] = None,
) -> NotificationMessage:
    """Summary of a new bundle purchase for the operator."""
    names = app_display_names(apps)
    plan = plan_label(amount)
    when = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC")
    display = customer_name or email
    provisioning_line = (
        f"Access has been automatically provisioned to: {', '.join(names)}."
        if provisioned
        else "Provisioning did not fully succeed; a separate alert has been sent."
    )

    subject = f"Signup: {display} - {'+'.join(names)} ({plan})"

    text_body = "\n".join(
        [
            "New Safe Family signup",
            "",
            f"Name: {customer_name or 'Not provided'}",
            f"Email: {email}",
            f"Plan: {plan}",
            f"Apps: {', '.join(names)}",
            f"Amount: {format_amount(amount)}",
            f"Date: {when}",
            "",
            provisioning_line,
            "",
            f"View in Stripe: {stripe_dashboard_link(email)}",
        ]
    )

    e = html.escape
    html_body = (
        "<h1>New Safe Family Signup</h1>"
        "<p>Someone just purchased a Safe Family subscription.</p>"
        "<h2>Customer Details:</h2>"
        "<ul>"
        f"<li><strong>Name:</strong> {e(customer_name or 'Not provided')}</li>"
        f"<li><strong>Email:</strong> {e(email)}</li>"
        f"<li><strong>Plan:</strong> {e(plan)}</li>"
        f"<li><strong>Apps:</strong> {e(', '.join(names))}</li>"
        f"<li><strong>Amount:</strong> {e(format_amount(amount))}</li>"
        f"<li><strong>Date:</strong> {e(when)}</li>"
        "</ul>"
        f"<p>{e(provisioning_line)}</p>"
        f'<p><a href="{e(stripe_dashboard_link(email))}">View in Stripe</a></p>'
    )

    return NotificationMessage(to=to, subject=subject, html_body=html_body, text_body=text_body)


async def send_signup_notification(
    notifier: Notifier,
    config: ProvisioningConfig,
    *,
    email: str,
    customer_name: Optional[str],
    amount: int,
    apps: Iterable[AppId],
    provisioned: bool,
) -> bool:
    """Best-effort signup summary. Failures are logged, never raised."""
    recipient = config.admin_notification_email
    if not recipient:
        logger.warning("SIGNUP_NOTIFICATION_SKIPPED", extra={"reason": "no recipient configured"})
        return False

    message = render_signup_notification(
        to=recipient,
        email=email,
        customer_name=customer_name,
        amount=amount,
        apps=apps,
        provisioned=provisioned,
    )
    try:
        await notifier.send(message)
    except Exception as e:
        logger.error(
            "SIGNUP_NOTIFICATION_FAILED",
            extra={
                "customer_hash": hash_email(email),
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return False
    return True
