"""SQLAlchemy ORM models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, JSON, TEXT, TIMESTAMP, Index, Integer, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT primary keys only autoincrement as INTEGER on SQLite
BigIntPK = BIGINT().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class AuditLogEntry(Base):
    """Append-only record of a system or operator action on a customer's access.

    Rows are inserted by ``AuditLog.record`` and never updated or deleted.
    """

    __tablename__ = "audit_log_entries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    actor: Mapped[str] = mapped_column(TEXT, nullable=False)  # system | operator email
    action: Mapped[str] = mapped_column(TEXT, nullable=False)  # AuditAction value
    target_email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_audit_log_created", "created_at"),
        Index("idx_audit_log_action", "action"),
        Index("idx_audit_log_target", "target_email"),
    )


class WebhookDedupEvent(Base):
    """Processed-event gate for at-least-once webhook delivery.

    One row per (provider, dedup_key). Rows older than the retention window
    are purged by the dedup retention loop.
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)  # stripe
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)  # ev_<event_id>

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    # SHA-256 hex of the request body, never the payload itself
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
        Index("idx_webhook_dedup_first_seen", "first_seen_at"),
    )
