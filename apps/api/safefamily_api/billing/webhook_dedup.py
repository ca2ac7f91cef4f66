"""Webhook dedup gate: at most one processing per (provider, dedup_key).

Stripe delivers webhooks at least once. Processed event ids are persisted so
a redelivered event is acknowledged without repeating side effects (sync,
audit entries, signup notification).

Gate:
  1. INSERT (provider, dedup_key, status='processing')
       → inserted          : first processor → continue
       → unique violation  : check if it's a re-processable failure
  2. UPDATE ... SET status='processing'
       WHERE status='failed'
          OR (status='processing' AND last touched before now - lease)
       → 1 row             : previous attempt failed or died mid-flight; reclaim
       → 0 rows            : 'done' or live in-flight 'processing' → duplicate, ACK 200

A delivery whose process is killed (deploy, worker restart) never reaches
mark_dedup_failed; the lease lets the next redelivery pick it up instead of
acknowledging it forever.

The UNIQUE constraint guarantees exactly one INSERT wins under concurrent
delivery; the conditional UPDATE is atomic at row level.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func, insert, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from safefamily_api.db.models import WebhookDedupEvent

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"

DEFAULT_RETENTION_HOURS = 72
DEFAULT_PROCESSING_LEASE_SECONDS = 300


def get_stripe_dedup_key(event_id: str) -> str:
    """Stripe event ids are globally unique and stable across redeliveries."""
    if not event_id:
        raise ValueError("Cannot derive Stripe dedup_key: event id missing")
    return f"ev_{event_id}"


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
    *,
    lease_seconds: float = DEFAULT_PROCESSING_LEASE_SECONDS,
) -> bool:
    """Attempt to claim processing rights for (provider, dedup_key).

    Args:
        lease_seconds: A 'processing' record untouched for longer than this
            is treated as abandoned and reclaimed. Must exceed the worst-case
            processing time of one delivery.

    Returns:
        True: first delivery, or a 'failed' / abandoned record was reclaimed.
        False: a 'done' or live 'processing' record already exists.
    """
    now = datetime.now(timezone.utc)
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    last_touched = func.coalesce(WebhookDedupEvent.last_seen_at, WebhookDedupEvent.first_seen_at)

    try:
        db.execute(
            insert(WebhookDedupEvent).values(
                provider=provider,
                dedup_key=dedup_key,
                first_seen_at=now,
                status=STATUS_PROCESSING,
                request_hash=request_hash,
            )
        )
        db.commit()
    except IntegrityError:
        db.rollback()
    else:
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    result = db.execute(
        update(WebhookDedupEvent)
        .where(
            WebhookDedupEvent.provider == provider,
            WebhookDedupEvent.dedup_key == dedup_key,
            or_(
                WebhookDedupEvent.status == STATUS_FAILED,
                (WebhookDedupEvent.status == STATUS_PROCESSING) & (last_touched < lease_cutoff),
            ),
        )
        .values(status=STATUS_PROCESSING, last_seen_at=now)
    )
    db.commit()

    if result.rowcount:
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    db.execute(
        update(WebhookDedupEvent)
        .where(
            WebhookDedupEvent.provider == provider,
            WebhookDedupEvent.dedup_key == dedup_key,
        )
        .values(status=status, last_seen_at=datetime.now(timezone.utc))
    )
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'done' after successful business processing."""
    _set_status(db, provider, dedup_key, STATUS_DONE)


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'failed' on processing error (allows provider retry)."""
    _set_status(db, provider, dedup_key, STATUS_FAILED)


def purge_expired_dedup(
    db: Session,
    retention_hours: int = DEFAULT_RETENTION_HOURS,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Delete dedup records first seen before the retention window.

    Returns:
        Number of records deleted.
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=retention_hours)
    result = db.execute(
        delete(WebhookDedupEvent).where(WebhookDedupEvent.first_seen_at < cutoff)
    )
    db.commit()
    deleted = result.rowcount or 0
    logger.info(
        "WEBHOOK_DEDUP_PURGED",
        extra={"deleted": deleted, "retention_hours": retention_hours},
    )
    return deleted
