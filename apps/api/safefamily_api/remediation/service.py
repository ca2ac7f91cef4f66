"""Operator remediation: check a customer's state, then re-provision.

Used after a provisioning alert, once the operator has confirmed payment in
the Stripe dashboard. Re-provisioning only ever grants; both operations are
safe to repeat.
"""

import asyncio
import logging
from typing import Iterable

from safefamily_api.audit.log import AuditAction, AuditLog
from safefamily_api.entitlements.apps import APP_ORDER, AppId, sorted_apps
from safefamily_api.provisioning.client import ProvisioningClient, UserStatus
from safefamily_api.provisioning.sync import SyncOrchestrator, SyncResult
from safefamily_api.utils.sanitize import hash_email

logger = logging.getLogger(__name__)


class RemediationService:
    def __init__(
        self,
        *,
        client: ProvisioningClient,
        orchestrator: SyncOrchestrator,
        audit_log: AuditLog,
    ):
        self._client = client
        self._orchestrator = orchestrator
        self._audit_log = audit_log

    async def check_status(self, email: str, *, actor: str) -> list[UserStatus]:
        """Per-app record for the customer, queried in parallel."""
        statuses = await asyncio.gather(
            *(self._client.fetch_user_status(app, email) for app in APP_ORDER)
        )

        self._audit_log.record(
            AuditAction.CHECK_STATUS,
            target_email=email,
            actor=actor,
            details={"apps": [s.to_dict() for s in statuses]},
        )
        logger.info(
            "REMEDIATION_STATUS_CHECKED",
            extra={
                "customer_hash": hash_email(email),
                "found": [s.app.value for s in statuses if s.found],
            },
        )
        return list(statuses)

    async def reprovision(self, email: str, apps: Iterable[AppId], *, actor: str) -> SyncResult:
        """Grant the given apps again; nothing is revoked."""
        desired = frozenset(sorted_apps(apps))
        result = await self._orchestrator.sync(email, desired, previous=None)

        self._audit_log.record(
            AuditAction.RETRY_PROVISION,
            target_email=email,
            actor=actor,
            details=result.to_dict(),
        )
        log = logger.info if result.success else logger.error
        log(
            "REMEDIATION_REPROVISIONED",
            extra={
                "customer_hash": hash_email(email),
                "apps": [a.value for a in sorted_apps(desired)],
                "failed_apps": [r.app.value for r in result.failed_apps],
            },
        )
        return result
