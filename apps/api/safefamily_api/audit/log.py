"""Append-only audit log of access changes, alerts and operator actions."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import TEXT, func, select
from sqlalchemy.orm import Session

from safefamily_api.db.models import AuditLogEntry

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class AuditAction(str, Enum):
    GRANT_ACCESS = "grant_access"
    REVOKE_ACCESS = "revoke_access"
    SYNC_ACCESS = "sync_access"
    SEND_ALERT = "send_alert"
    RETRY_PROVISION = "retry_provision"
    CHECK_STATUS = "check_status"


@dataclass(frozen=True)
class AuditRecord:
    """Detached, read-only view of an audit log row."""

    id: int
    created_at: datetime
    actor: str
    action: str
    target_email: Optional[str]
    details: dict

    @classmethod
    def from_row(cls, row: AuditLogEntry) -> "AuditRecord":
        return cls(
            id=row.id,
            created_at=row.created_at,
            actor=row.actor,
            action=row.action,
            target_email=row.target_email,
            details=dict(row.details or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "actor": self.actor,
            "action": self.action,
            "target_email": self.target_email,
            "details": self.details,
        }


class AuditLog:
    """Audit log repository.

    Exposes insert and query only; entries are never updated or deleted.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record(
        self,
        action: AuditAction,
        *,
        target_email: Optional[str],
        details: Optional[dict[str, Any]] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> AuditRecord:
        """Write exactly one entry and return it."""
        with self._session_factory() as session:
            row = AuditLogEntry(
                actor=actor,
                action=action.value,
                target_email=target_email,
                details=details or {},
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            record = AuditRecord.from_row(row)

        logger.info(
            "AUDIT_RECORDED",
            extra={"audit_id": record.id, "action": record.action, "actor": actor},
        )
        return record

    def query(
        self,
        *,
        action: Optional[str] = None,
        target_email: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[AuditRecord], int]:
        """Return ``(entries, total)`` newest first.

        ``target_email`` matches case-insensitively as a substring.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        conditions = []
        if action:
            conditions.append(AuditLogEntry.action == action)
        if target_email:
            needle = target_email.strip().lower()
            target = func.lower(AuditLogEntry.target_email, type_=TEXT)
            conditions.append(target.contains(needle, autoescape=True))

        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(AuditLogEntry).where(*conditions)
            ) or 0
            rows = session.scalars(
                select(AuditLogEntry)
                .where(*conditions)
                .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            entries = [AuditRecord.from_row(row) for row in rows]

        return entries, int(total)
