"""Stripe webhook endpoint.

Webhook error taxonomy:
  (A) Missing Stripe-Signature header → 400
  (B) Signature invalid / stale → 400 (never retried, no side effects)
  (C) Invalid JSON / not a Stripe event → 400
  (D) Our misconfig (missing signing secret) → 500 WEBHOOK_PROVIDER_MISCONFIG
  (E) Transient Stripe API error during processing → 500 WEBHOOK_UPSTREAM_FAILED
  (F) Any other processing error → 500 WEBHOOK_INTERNAL_ERROR
Provisioning failures are escalated and acknowledged with 200.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from safefamily_api.billing.dispatcher import WebhookDispatcher
from safefamily_api.billing.events import MalformedEventError
from safefamily_api.billing.stripe_gateway import (
    STRIPE_PROVIDER,
    TRANSIENT_STRIPE_ERRORS,
    WebhookConfigError,
    WebhookSignatureError,
)
from safefamily_api.context import request_id_var
from safefamily_api.schemas import WebhookAck
from safefamily_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
    exc_info: bool = False,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get(None)
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "provider": STRIPE_PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra, exc_info=exc_info)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:safefamily:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": STRIPE_PROVIDER,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=response_headers)


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Stripe webhook handler."""
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": STRIPE_PROVIDER, "payload_hash": payload_hash, "payload_size": len(raw_body)},
    )

    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_HEADERS",
            title="Missing required webhook headers",
            detail="Stripe-Signature header is absent",
            payload_hash=payload_hash,
        )

    dispatcher = get_dispatcher(request)

    try:
        outcome = await dispatcher.handle(raw_body, stripe_signature)
    except WebhookConfigError as e:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfigured",
            detail=str(e),
            payload_hash=payload_hash,
        )
    except WebhookSignatureError as e:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="Signature does not match payload",
            payload_hash=payload_hash,
            extra={"reason": sanitize_str(str(e))},
        )
    except MalformedEventError as e:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=str(e),
            payload_hash=payload_hash,
        )
    except TRANSIENT_STRIPE_ERRORS as e:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_UPSTREAM_FAILED",
            title="Upstream provider error",
            detail="Stripe API unavailable while processing event; retry later",
            payload_hash=payload_hash,
            extra={"error_type": type(e).__name__},
        )
    except Exception as e:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Webhook processing failed",
            detail="An internal error occurred while processing the event",
            payload_hash=payload_hash,
            extra={"error_type": type(e).__name__},
            exc_info=True,
        )

    logger.info(
        "WEBHOOK_ACKNOWLEDGED",
        extra={"status": outcome.status, "event_type": outcome.event_type, "reason": outcome.reason},
    )
    return WebhookAck(status=outcome.status, event_id=outcome.event_id, event_type=outcome.event_type)
