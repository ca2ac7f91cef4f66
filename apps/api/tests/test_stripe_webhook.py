"""POST /webhooks/stripe: verification, routing, provisioning and escalation.

Error semantics:
  missing header / bad signature / bad payload → 400, no side effects
  signing secret not configured                → 500 WEBHOOK_PROVIDER_MISCONFIG
  transient Stripe API error                   → 500 WEBHOOK_UPSTREAM_FAILED
  provisioning failure                         → 200 + escalation
"""

import asyncio
import json
import time

import httpx
import pytest
import stripe

from safefamily_api.entitlements.apps import AppId
from safefamily_api.main import create_app

from conftest import (
    FakeCustomerDirectory,
    checkout_session,
    make_config,
    no_sleep,
    stripe_event,
    stripe_signature,
    subscription,
)

T, TB, R = AppId.SAFETUNES, AppId.SAFETUBE, AppId.SAFEREADS
WEBHOOK_PATH = "/webhooks/stripe"


def _post(client, body: bytes, signature: str | None = "auto"):
    headers = {"Content-Type": "application/json"}
    if signature == "auto":
        headers["Stripe-Signature"] = stripe_signature(body)
    elif signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post(WEBHOOK_PATH, content=body, headers=headers)


def _actions(audit_log) -> list[str]:
    entries, _ = audit_log.query(limit=200)
    return sorted(e.action for e in entries)


class TestVerification:
    def test_missing_signature_header(self, client, backend, audit_log):
        response = _post(client, stripe_event("checkout.session.completed", checkout_session()), signature=None)

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json()["error_code"] == "WEBHOOK_MISSING_HEADERS"
        assert backend.requests == []

    def test_invalid_signature_has_no_side_effects(self, client, backend, audit_log, notifier):
        body = stripe_event("checkout.session.completed", checkout_session())

        response = _post(client, body, signature=stripe_signature(body, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
        assert backend.requests == []
        assert audit_log.query()[1] == 0
        assert notifier.messages == []

    def test_tampered_body_is_rejected(self, client, backend):
        body = stripe_event("checkout.session.completed", checkout_session())
        signature = stripe_signature(body)
        tampered = body.replace(b"parent@example.com", b"attacker@example.com")

        response = _post(client, tampered, signature=signature)

        assert response.status_code == 400
        assert backend.requests == []

    def test_stale_timestamp_is_rejected(self, client, backend):
        body = stripe_event("checkout.session.completed", checkout_session())

        response = _post(client, body, signature=stripe_signature(body, timestamp=int(time.time()) - 3600))

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
        assert backend.requests == []

    def test_unconfigured_secret_is_our_error(self, build_client, backend):
        client = build_client(make_config(STRIPE_WEBHOOK_SECRET=""))

        response = _post(client, stripe_event("checkout.session.completed", checkout_session()))

        assert response.status_code == 500
        assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"
        assert response.headers["Retry-After"] == "60"
        assert backend.requests == []

    def test_signed_but_invalid_json(self, client):
        response = _post(client, b"{not json")

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"

    def test_signed_but_not_an_event(self, client):
        response = _post(client, json.dumps({"hello": "world"}).encode())

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"


class TestCheckoutCompleted:
    def test_bundle_checkout_grants_every_app(self, client, backend, audit_log, notifier):
        response = _post(client, stripe_event("checkout.session.completed", checkout_session()))

        assert response.status_code == 200
        body = response.json()
        assert body == {
            "received": True,
            "status": "processed",
            "event_id": "evt_test_001",
            "event_type": "checkout.session.completed",
        }
        assert backend.calls_for(T)[0][0] == "/grantLifetime"
        assert backend.calls_for(TB)[0][1]["status"] == "lifetime"
        assert backend.calls_for(R)[0][0] == "/grantLifetime"

        entries, total = audit_log.query()
        assert total == 1
        assert entries[0].action == "grant_access"
        assert entries[0].target_email == "parent@example.com"
        assert entries[0].details["event_id"] == "evt_test_001"
        assert entries[0].details["success"] is True

        assert len(notifier.messages) == 1
        assert notifier.messages[0].subject.startswith("Signup: Pat Parent - SafeTunes+SafeTube+SafeReads")

    def test_two_app_selection_only_grants_selected(self, client, backend):
        _post(client, stripe_event("checkout.session.completed",
                                   checkout_session(apps="safetunes,safetube", amount_total=799)))

        assert len(backend.calls_for(T)) == 1
        assert len(backend.calls_for(TB)) == 1
        assert backend.calls_for(R) == []

    def test_one_app_down_escalates_once(self, client, backend, audit_log, notifier):
        backend.failing = {TB}

        response = _post(client, stripe_event("checkout.session.completed", checkout_session()))

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert len(backend.calls_for(TB)) == 3
        assert len(backend.calls_for(T)) == 1
        assert len(backend.calls_for(R)) == 1

        assert _actions(audit_log) == ["grant_access", "send_alert"]
        grant_entry = audit_log.query(action="grant_access")[0][0]
        assert grant_entry.details["success"] is False

        subjects = [m.subject for m in notifier.messages]
        alerts = [s for s in subjects if s.startswith("URGENT")]
        assert alerts == ["URGENT: Provisioning failed for Pat Parent (SafeTube)"]
        alert_body = next(m.text_body for m in notifier.messages if m.subject.startswith("URGENT"))
        assert "admin/failed-provisions?email=parent%40example.com&apps=safetube" in alert_body

    def test_non_bundle_checkout_is_ignored(self, client, backend, audit_log):
        response = _post(client, stripe_event("checkout.session.completed", checkout_session(bundle=False)))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert backend.requests == []
        assert audit_log.query()[1] == 0

    def test_checkout_without_email_is_escalated_to_an_operator(self, client, backend, audit_log, notifier):
        response = _post(client, stripe_event("checkout.session.completed", checkout_session(email=None)))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert backend.requests == []

        entries, total = audit_log.query()
        assert total == 1
        assert entries[0].action == "send_alert"
        assert entries[0].target_email is None
        assert entries[0].details["failed_apps"] == ["safetunes", "safetube", "safereads"]
        assert entries[0].details["event_id"] == "evt_test_001"

        assert [m.subject for m in notifier.messages] == [
            "URGENT: Provisioning failed for Pat Parent (SafeTunes, SafeTube, SafeReads)"
        ]
        assert "customer email missing from checkout session" in notifier.messages[0].text_body
        assert "cus_test_001" in notifier.messages[0].text_body

    def test_broken_signup_notification_does_not_fail_the_webhook(self, build_client, backend, audit_log):
        class CrashingNotifier:
            name = "crashing"

            async def send(self, message):
                raise RuntimeError("template engine exploded")

        client = build_client(notifier=CrashingNotifier())

        response = _post(client, stripe_event("checkout.session.completed", checkout_session()))

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert len(backend.requests) == 3
        assert _actions(audit_log) == ["grant_access"]

    def test_redelivery_is_acknowledged_without_side_effects(self, client, backend, audit_log, notifier):
        body = stripe_event("checkout.session.completed", checkout_session())

        first = _post(client, body)
        second = _post(client, body)

        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        assert len(backend.requests) == 3
        assert audit_log.query()[1] == 1
        assert len(notifier.messages) == 1


class TestSubscriptionEvents:
    def test_plan_change_grants_and_revokes_difference(self, client, backend, audit_log):
        body = stripe_event(
            "customer.subscription.updated",
            subscription("active", apps="safetunes,safereads"),
            previous_attributes={"metadata": {"apps": "safetunes,safetube"}},
        )

        response = _post(client, body)

        assert response.json()["status"] == "processed"
        assert backend.calls_for(T) == []
        assert backend.calls_for(R)[0][0] == "/grantLifetime"
        assert backend.calls_for(TB)[0][1]["status"] == "expired"

        entries, _ = audit_log.query()
        assert entries[0].action == "sync_access"
        assert entries[0].details["to_grant"] == ["safereads"]
        assert entries[0].details["to_revoke"] == ["safetube"]

    def test_active_update_without_metadata_change_grants_desired(self, client, backend):
        _post(client, stripe_event("customer.subscription.updated", subscription("active", apps="safetube")))

        assert [path for _, path, _ in backend.requests] == ["/setSubscriptionStatus"]
        assert backend.calls_for(TB)[0][1]["status"] == "lifetime"

    def test_canceled_revokes_everything_with_manual_note(self, client, backend, audit_log, customers):
        _post(client, stripe_event("customer.subscription.updated", subscription("canceled")))

        assert customers.lookups == ["cus_test_001"]
        path, params = backend.calls_for(T)[0]
        assert path == "/setSubscriptionStatus"
        assert (params["email"], params["status"]) == ("parent@example.com", "expired")
        assert backend.calls_for(TB)[0][1]["status"] == "expired"
        assert backend.calls_for(R) == []

        entries, total = audit_log.query()
        assert total == 1
        assert entries[0].action == "revoke_access"
        reads = next(r for r in entries[0].details["results"] if r["app"] == "safereads")
        assert reads["success"] is True
        assert reads["note"] == "manual handling required"

    def test_past_due_status_changes_nothing(self, client, backend):
        response = _post(client, stripe_event("customer.subscription.updated", subscription("past_due")))

        assert response.json()["status"] == "ignored"
        assert backend.requests == []

    def test_non_bundle_subscription_is_ignored(self, client, backend):
        response = _post(client, stripe_event("customer.subscription.deleted", subscription("canceled", bundle=False)))

        assert response.json()["status"] == "ignored"
        assert backend.requests == []

    def test_deleted_subscription_revokes_selected_apps(self, client, backend, audit_log):
        _post(client, stripe_event("customer.subscription.deleted",
                                   subscription("canceled", apps="safetunes,safetube")))

        assert backend.calls_for(T)[0][1]["status"] == "expired"
        assert backend.calls_for(TB)[0][1]["status"] == "expired"
        assert backend.calls_for(R) == []
        assert _actions(audit_log) == ["revoke_access"]

    def test_failed_revoke_is_escalated(self, client, backend, audit_log):
        backend.failing = {TB}

        _post(client, stripe_event("customer.subscription.deleted", subscription("canceled")))

        assert _actions(audit_log) == ["revoke_access", "send_alert"]

    def test_unresolvable_customer_is_ignored(self, build_client, backend):
        client = build_client(customers=FakeCustomerDirectory())

        response = _post(client, stripe_event("customer.subscription.deleted", subscription("canceled")))

        assert response.json()["status"] == "ignored"
        assert backend.requests == []

    def test_transient_stripe_error_allows_redelivery(self, build_client, backend, customers):
        customers.error = stripe.APIConnectionError("connection reset")
        client = build_client(customers=customers)
        body = stripe_event("customer.subscription.deleted", subscription("canceled"))

        failed = _post(client, body)

        assert failed.status_code == 500
        assert failed.json()["error_code"] == "WEBHOOK_UPSTREAM_FAILED"
        assert failed.headers["Retry-After"] == "60"
        assert backend.requests == []

        customers.error = None
        retried = _post(client, body)

        assert retried.status_code == 200
        assert retried.json()["status"] == "processed"

    def test_unexpected_error_is_500_internal(self, build_client, customers):
        customers.error = RuntimeError("boom")
        client = build_client(customers=customers)

        response = _post(client, stripe_event("customer.subscription.deleted", subscription("canceled")))

        assert response.status_code == 500
        assert response.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"


class TestOtherEvents:
    def test_payment_failed_is_logged_only(self, client, backend, audit_log):
        response = _post(client, stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_1"}))

        assert response.json()["status"] == "ignored"
        assert backend.requests == []
        assert audit_log.query()[1] == 0

    def test_unknown_event_type_is_acknowledged(self, client, backend):
        response = _post(client, stripe_event("charge.refunded", {"id": "ch_1"}))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert backend.requests == []


class TestInterruptedDelivery:
    @pytest.mark.asyncio
    async def test_cancelled_delivery_is_reprocessed_on_redelivery(
        self, engine, session_factory, notifier, customers, backend, audit_log
    ):
        config = make_config()
        request_started = asyncio.Event()
        release = asyncio.Event()

        async def blocking_handler(request: httpx.Request) -> httpx.Response:
            request_started.set()
            await release.wait()
            return httpx.Response(200, json={"success": True})

        def build(transport):
            return create_app(
                config,
                engine=engine,
                session_factory=session_factory,
                provisioning_transport=transport,
                notifier=notifier,
                customers=customers,
                sleep=no_sleep,
            )

        body = stripe_event("checkout.session.completed", checkout_session(apps="safetunes"))

        stalled = build(httpx.MockTransport(blocking_handler))
        task = asyncio.create_task(stalled.state.dispatcher.handle(body, stripe_signature(body)))
        await asyncio.wait_for(request_started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        restarted = build(backend.transport)
        outcome = await restarted.state.dispatcher.handle(body, stripe_signature(body))

        assert outcome.status == "processed"
        assert [path for path, _ in backend.calls_for(T)] == ["/grantLifetime"]
        assert audit_log.query()[1] == 1
