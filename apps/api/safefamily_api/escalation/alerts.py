"""Failure escalation for provisioning that exhausted its retries.

A customer who paid but has no access is the outcome this module exists to
surface. Escalation order:
  1. one ``send_alert`` audit entry
  2. Sentry event at ``fatal`` level (customer email hashed)
  3. operator notification with a remediation deep link

If the notification channel fails, the full alert is logged at CRITICAL.
Escalation never raises into the caller and never touches provisioning.
"""

import html
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlencode

import sentry_sdk

from safefamily_api.audit.log import AuditAction, AuditLog
from safefamily_api.config.settings import ProvisioningConfig
from safefamily_api.entitlements.apps import AppId, sorted_apps
from safefamily_api.notifications.email import (
    NotificationMessage,
    Notifier,
    format_amount,
    stripe_dashboard_link,
)
from safefamily_api.provisioning.results import AppProvisionResult, Direction
from safefamily_api.provisioning.sync import SyncResult
from safefamily_api.utils.sanitize import hash_email

logger = logging.getLogger(__name__)

REMEDIATION_PATH = "/admin/failed-provisions"


def build_remediation_link(base_url: str, email: str, apps: Iterable[AppId]) -> str:
    """Deep link to the remediation tool, pre-filled with customer and apps."""
    query = urlencode(
        {"email": email, "apps": ",".join(app.value for app in sorted_apps(apps))},
        safe=",",
    )
    return f"{base_url.rstrip('/')}{REMEDIATION_PATH}?{query}"


@dataclass(frozen=True)
class ProvisioningFailureAlert:
    customer_email: str
    customer_name: Optional[str]
    amount: int
    requested_apps: tuple[AppId, ...]
    failures: tuple[AppProvisionResult, ...]
    event_id: Optional[str]
    event_type: Optional[str]
    remediation_link: str
    customer_id: Optional[str] = None

    @classmethod
    def from_sync(
        cls,
        result: SyncResult,
        *,
        remediation_base_url: str,
        amount: int = 0,
        customer_name: Optional[str] = None,
        customer_id: Optional[str] = None,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> "ProvisioningFailureAlert":
        failures = result.failed_apps
        return cls(
            customer_email=result.email,
            customer_name=customer_name,
            amount=amount,
            requested_apps=tuple(sorted_apps(result.diff.to_grant | result.diff.to_revoke)),
            failures=failures,
            event_id=event_id,
            event_type=event_type,
            remediation_link=build_remediation_link(
                remediation_base_url, result.email, (f.app for f in failures)
            ),
            customer_id=customer_id,
        )

    @classmethod
    def unresolved_customer(
        cls,
        apps: Iterable[AppId],
        *,
        reason: str,
        remediation_base_url: str,
        amount: int = 0,
        customer_name: Optional[str] = None,
        customer_id: Optional[str] = None,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> "ProvisioningFailureAlert":
        """Alert for a paid purchase that could not be provisioned because the
        customer's email is unknown. No app was attempted.
        """
        requested = tuple(sorted_apps(apps))
        return cls(
            customer_email="",
            customer_name=customer_name,
            amount=amount,
            requested_apps=requested,
            failures=tuple(
                AppProvisionResult(
                    app=app, direction=Direction.GRANT, success=False, attempts=0, error=reason
                )
                for app in requested
            ),
            event_id=event_id,
            event_type=event_type,
            remediation_link=build_remediation_link(remediation_base_url, "", requested),
            customer_id=customer_id,
        )

    @property
    def failed_app_ids(self) -> list[str]:
        return [f.app.value for f in self.failures]

    def summary(self) -> str:
        return (
            f"Provisioning failed: {', '.join(self.failed_app_ids)} "
            f"(customer charged {format_amount(self.amount)})"
        )

    def to_log_dict(self) -> dict:
        """Everything an operator needs, with the email reduced to its hash."""
        return {
            "customer_hash": hash_email(self.customer_email),
            "customer_id": self.customer_id,
            "amount": self.amount,
            "requested_apps": [a.value for a in self.requested_apps],
            "failures": [f.to_dict() for f in self.failures],
            "event_id": self.event_id,
            "event_type": self.event_type,
        }


def capture_to_sentry(alert: ProvisioningFailureAlert) -> None:
    """Record the alert in Sentry at fatal level. No-op when Sentry is not initialised."""
    sentry_sdk.capture_message(
        alert.summary(),
        level="fatal",
        tags={
            "component": "provisioning",
            "event_type": alert.event_type or "manual",
            "failed_apps": ",".join(alert.failed_app_ids),
        },
        contexts={"provisioning": alert.to_log_dict()},
        user={"id": hash_email(alert.customer_email)},
    )


def render_failure_alert(alert: ProvisioningFailureAlert, *, to: str) -> NotificationMessage:
    names = ", ".join(f.app.display_name for f in alert.failures)
    who = alert.customer_name or alert.customer_email or alert.customer_id or "unknown customer"
    customer = alert.customer_email or "unknown"
    stripe_link = stripe_dashboard_link(alert.customer_email or alert.customer_id or "")
    subject = f"URGENT: Provisioning failed for {who} ({names})"

    failure_lines = [
        f"- {f.app.display_name} ({f.direction.value}): {f.error or 'unknown error'} "
        f"after {f.attempts} attempt(s)"
        for f in alert.failures
    ]
    text_body = "\n".join(
        [
            "A customer was charged but could not be provisioned automatically.",
            "",
            f"Customer: {customer}",
            f"Name: {alert.customer_name or 'Not provided'}",
            f"Amount charged: {format_amount(alert.amount)}",
            f"Event: {alert.event_type or 'manual'} {alert.event_id or ''}".rstrip(),
            "",
            "Failed apps:",
            *failure_lines,
            "",
            f"Fix it: {alert.remediation_link}",
            f"View in Stripe: {stripe_link}",
        ]
    )

    e = html.escape
    items = "".join(f"<li>{e(line[2:])}</li>" for line in failure_lines)
    html_body = (
        "<h1>Provisioning failed</h1>"
        "<p>A customer was charged but could not be provisioned automatically.</p>"
        "<ul>"
        f"<li><strong>Customer:</strong> {e(customer)}</li>"
        f"<li><strong>Name:</strong> {e(alert.customer_name or 'Not provided')}</li>"
        f"<li><strong>Amount charged:</strong> {e(format_amount(alert.amount))}</li>"
        f"<li><strong>Event:</strong> {e(alert.event_type or 'manual')} {e(alert.event_id or '')}</li>"
        "</ul>"
        f"<h2>Failed apps</h2><ul>{items}</ul>"
        f'<p><a href="{e(alert.remediation_link)}">Open remediation tool</a></p>'
        f'<p><a href="{e(stripe_link)}">View in Stripe</a></p>'
    )
    return NotificationMessage(to=to, subject=subject, html_body=html_body, text_body=text_body)


class FailureEscalator:
    """Audit, track and notify for one failed sync."""

    def __init__(
        self,
        *,
        audit_log: AuditLog,
        notifier: Notifier,
        config: ProvisioningConfig,
        capture: Callable[[ProvisioningFailureAlert], None] = capture_to_sentry,
    ):
        self._audit_log = audit_log
        self._notifier = notifier
        self._recipient = config.admin_notification_email
        self._remediation_base_url = config.remediation_base_url
        self._capture = capture

    @property
    def remediation_base_url(self) -> str:
        return self._remediation_base_url

    async def escalate(self, alert: ProvisioningFailureAlert) -> bool:
        """Escalate the alert. Returns True if the operator notification was delivered."""
        log_extra = alert.to_log_dict()

        try:
            self._audit_log.record(
                AuditAction.SEND_ALERT,
                target_email=alert.customer_email or None,
                details={
                    "failed_apps": alert.failed_app_ids,
                    "failures": [f.to_dict() for f in alert.failures],
                    "amount": alert.amount,
                    "event_id": alert.event_id,
                    "event_type": alert.event_type,
                    "remediation_link": alert.remediation_link,
                },
            )
        except Exception:
            logger.exception("ESCALATION_AUDIT_FAILED", extra=log_extra)

        try:
            self._capture(alert)
        except Exception:
            logger.exception("ESCALATION_ERROR_TRACKING_FAILED", extra=log_extra)

        if not self._recipient:
            logger.critical(
                "PROVISIONING_ALERT_UNDELIVERED",
                extra={**log_extra, "reason": "no notification recipient configured"},
            )
            return False

        try:
            await self._notifier.send(render_failure_alert(alert, to=self._recipient))
        except Exception as e:
            logger.critical(
                "PROVISIONING_ALERT_UNDELIVERED",
                extra={**log_extra, "reason": str(e), "error_type": type(e).__name__},
            )
            return False

        logger.error("PROVISIONING_ALERT_SENT", extra=log_extra)
        return True
