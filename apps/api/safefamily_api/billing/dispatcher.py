"""Stripe webhook dispatcher.

handle(raw_body, signature_header):
  1. Verify signature (security boundary: failure → no side effects at all)
  2. Parse event
  3. Dedup gate on the Stripe event id
  4. Route by event type → resolve entitlements → sync → audit / escalate

Provisioning failures never become webhook errors: Stripe redelivery would
not fix them, so they are escalated instead and the event is acknowledged.
Unexpected exceptions, and cancellation of the request, mark the dedup record
failed and propagate (HTTP 500) so Stripe's retry reprocesses the event.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from safefamily_api.audit.log import AuditAction, AuditLog
from safefamily_api.billing.events import BillingEvent, BillingEventType, MalformedEventError
from safefamily_api.billing.stripe_gateway import (
    STRIPE_PROVIDER,
    StripeCustomerDirectory,
    WebhookConfigError,
    WebhookSignatureError,
    verify_signature,
)
from safefamily_api.billing.webhook_dedup import (
    get_stripe_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from safefamily_api.config.settings import ProvisioningConfig
from safefamily_api.context import customer_hash_var, event_id_var
from safefamily_api.entitlements.apps import EntitlementSet, sorted_apps
from safefamily_api.entitlements.resolver import is_bundle, resolve_entitlements
from safefamily_api.escalation.alerts import FailureEscalator, ProvisioningFailureAlert
from safefamily_api.notifications.email import Notifier, send_signup_notification
from safefamily_api.provisioning.retry import backoff_delay
from safefamily_api.provisioning.sync import EntitlementDiff, SyncOrchestrator, SyncResult
from safefamily_api.utils.sanitize import hash_email, payload_hash_bytes

logger = logging.getLogger(__name__)

__all__ = [
    "ProcessingOutcome",
    "WebhookConfigError",
    "WebhookDispatcher",
    "WebhookSignatureError",
    "audit_action_for_diff",
    "processing_lease_seconds",
]

STATUS_PROCESSED = "processed"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_IGNORED = "ignored"

REVOKE_STATUSES = frozenset({"canceled", "unpaid"})

# Headroom over the provisioning budget for customer lookup, audit and alerts
LEASE_MARGIN_SECONDS = 120.0


@dataclass(frozen=True)
class ProcessingOutcome:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    sync: Optional[SyncResult] = None
    reason: Optional[str] = None


def processing_lease_seconds(config: ProvisioningConfig) -> float:
    """Longest one delivery may hold its dedup record before it counts as abandoned.

    Apps are provisioned concurrently, so one app's full retry budget bounds
    the sync: every attempt timing out plus every backoff between attempts.
    """
    attempts = config.provision_max_attempts
    backoff = sum(
        backoff_delay(attempt, config.provision_initial_delay_seconds)
        for attempt in range(1, attempts)
    )
    return attempts * config.provision_timeout_seconds + backoff + LEASE_MARGIN_SECONDS


def audit_action_for_diff(diff: EntitlementDiff) -> AuditAction:
    if diff.to_grant and diff.to_revoke:
        return AuditAction.SYNC_ACCESS
    if diff.to_revoke:
        return AuditAction.REVOKE_ACCESS
    return AuditAction.GRANT_ACCESS


class WebhookDispatcher:
    """Turn verified Stripe events into entitlement changes."""

    def __init__(
        self,
        *,
        config: ProvisioningConfig,
        session_factory: Callable[[], Session],
        orchestrator: SyncOrchestrator,
        customers: StripeCustomerDirectory,
        audit_log: AuditLog,
        escalator: FailureEscalator,
        notifier: Notifier,
    ):
        self._config = config
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._customers = customers
        self._audit_log = audit_log
        self._escalator = escalator
        self._notifier = notifier

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> ProcessingOutcome:
        """Verify, dedup and process one webhook delivery.

        Raises:
            WebhookConfigError: Signing secret not configured.
            WebhookSignatureError: Missing or invalid signature.
            MalformedEventError: Body is not a Stripe event.
        """
        verify_signature(raw_body, signature_header, self._config.stripe_webhook_secret)

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedEventError("Request body is not valid JSON") from e

        event = BillingEvent.from_payload(payload)
        event_id_var.set(event.event_id)

        logger.info(
            "WEBHOOK_EVENT_VERIFIED",
            extra={"provider": STRIPE_PROVIDER, "event_type": event.raw_type},
        )

        dedup_key = get_stripe_dedup_key(event.event_id)
        with self._session_factory() as db:
            acquired = try_acquire_dedup(
                db, STRIPE_PROVIDER, dedup_key, request_hash=payload_hash_bytes(raw_body),
                lease_seconds=processing_lease_seconds(self._config),
            )
        if not acquired:
            return ProcessingOutcome(
                status=STATUS_ALREADY_PROCESSED,
                event_id=event.event_id,
                event_type=event.raw_type,
            )

        try:
            outcome = await self._route(event)
        except BaseException:
            # Includes cancellation: the record must not stay 'processing'.
            with self._session_factory() as db:
                mark_dedup_failed(db, STRIPE_PROVIDER, dedup_key)
            raise

        with self._session_factory() as db:
            mark_dedup_done(db, STRIPE_PROVIDER, dedup_key)
        return outcome

    # ── Routing ──────────────────────────────────────────────────────────────

    async def _route(self, event: BillingEvent) -> ProcessingOutcome:
        if event.event_type is BillingEventType.CHECKOUT_COMPLETED:
            return await self._on_checkout_completed(event)
        if event.event_type is BillingEventType.SUBSCRIPTION_UPDATED:
            return await self._on_subscription_updated(event)
        if event.event_type is BillingEventType.SUBSCRIPTION_DELETED:
            return await self._on_subscription_deleted(event)
        if event.event_type is BillingEventType.INVOICE_PAYMENT_FAILED:
            logger.info(
                "INVOICE_PAYMENT_FAILED",
                extra={"invoice_id": event.object_id, "customer_id": event.customer_id},
            )
            return self._ignored(event, "payment failure is logged only")

        logger.info("WEBHOOK_EVENT_UNHANDLED", extra={"event_type": event.raw_type})
        return self._ignored(event, "unhandled event type")

    def _ignored(self, event: BillingEvent, reason: str) -> ProcessingOutcome:
        return ProcessingOutcome(
            status=STATUS_IGNORED,
            event_id=event.event_id,
            event_type=event.raw_type,
            reason=reason,
        )

    async def _on_checkout_completed(self, event: BillingEvent) -> ProcessingOutcome:
        email = event.customer_email
        desired = resolve_entitlements(event.metadata)
        bundle = is_bundle(event.metadata)

        logger.info(
            "CHECKOUT_COMPLETED",
            extra={
                "bundle": bundle,
                "apps": [a.value for a in sorted_apps(desired)],
                "session_id": event.object_id,
            },
        )

        if not bundle:
            return self._ignored(event, "not a bundle purchase")
        if not email:
            logger.error("CHECKOUT_EMAIL_MISSING", extra={"session_id": event.object_id})
            await self._escalator.escalate(
                ProvisioningFailureAlert.unresolved_customer(
                    desired,
                    reason="customer email missing from checkout session",
                    remediation_base_url=self._escalator.remediation_base_url,
                    amount=event.amount,
                    customer_name=event.customer_name,
                    customer_id=event.customer_id,
                    event_id=event.event_id,
                    event_type=event.raw_type,
                )
            )
            return self._ignored(event, "checkout session has no customer email")

        result = await self._sync(event, email, desired, previous=None)

        await send_signup_notification(
            self._notifier,
            self._config,
            email=email,
            customer_name=event.customer_name,
            amount=event.amount,
            apps=desired,
            provisioned=result.success,
        )
        return self._processed(event, result)

    async def _on_subscription_updated(self, event: BillingEvent) -> ProcessingOutcome:
        desired = resolve_entitlements(event.metadata)
        logger.info(
            "SUBSCRIPTION_UPDATED",
            extra={
                "subscription_id": event.object_id,
                "subscription_status": event.status,
                "apps": [a.value for a in sorted_apps(desired)],
                "metadata_changed": event.previous_metadata is not None,
            },
        )

        if not is_bundle(event.metadata):
            return self._ignored(event, "not a bundle subscription")

        if event.status == "active":
            previous: Optional[EntitlementSet] = None
            if event.previous_metadata is not None:
                previous = resolve_entitlements(event.previous_metadata)
            email = await self._resolve_email(event)
            if not email:
                return self._ignored(event, "customer email not resolved")
            result = await self._sync(event, email, desired, previous=previous)
            return self._processed(event, result)

        if event.status in REVOKE_STATUSES:
            email = await self._resolve_email(event)
            if not email:
                return self._ignored(event, "customer email not resolved")
            result = await self._sync(event, email, frozenset(), previous=desired)
            return self._processed(event, result)

        logger.info(
            "SUBSCRIPTION_STATUS_IGNORED",
            extra={"subscription_id": event.object_id, "subscription_status": event.status},
        )
        return self._ignored(event, f"subscription status {event.status!r} needs no change")

    async def _on_subscription_deleted(self, event: BillingEvent) -> ProcessingOutcome:
        apps = resolve_entitlements(event.metadata)
        logger.info(
            "SUBSCRIPTION_DELETED",
            extra={"subscription_id": event.object_id, "apps": [a.value for a in sorted_apps(apps)]},
        )

        if not is_bundle(event.metadata):
            return self._ignored(event, "not a bundle subscription")

        email = await self._resolve_email(event)
        if not email:
            return self._ignored(event, "customer email not resolved")

        result = await self._sync(event, email, frozenset(), previous=apps)
        return self._processed(event, result)

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _resolve_email(self, event: BillingEvent) -> Optional[str]:
        email = event.customer_email or await self._customers.lookup_email(event.customer_id)
        if not email:
            logger.error(
                "CUSTOMER_EMAIL_UNRESOLVED",
                extra={"customer_id": event.customer_id, "event_type": event.raw_type},
            )
        return email

    def _processed(self, event: BillingEvent, result: SyncResult) -> ProcessingOutcome:
        return ProcessingOutcome(
            status=STATUS_PROCESSED,
            event_id=event.event_id,
            event_type=event.raw_type,
            sync=result,
        )

    async def _sync(
        self,
        event: BillingEvent,
        email: str,
        desired: EntitlementSet,
        *,
        previous: Optional[EntitlementSet],
    ) -> SyncResult:
        """Run one sync, record its audit entry and escalate any failure."""
        customer_hash_var.set(hash_email(email))
        result = await self._orchestrator.sync(email, desired, previous)

        if result.diff.is_empty:
            return result

        self._audit_log.record(
            audit_action_for_diff(result.diff),
            target_email=email,
            details={
                **result.to_dict(),
                "event_id": event.event_id,
                "event_type": event.raw_type,
            },
        )

        if not result.success:
            alert = ProvisioningFailureAlert.from_sync(
                result,
                remediation_base_url=self._escalator.remediation_base_url,
                amount=event.amount,
                customer_name=event.customer_name,
                customer_id=event.customer_id,
                event_id=event.event_id,
                event_type=event.raw_type,
            )
            await self._escalator.escalate(alert)

        return result
