"""Diff-based entitlement sync across apps.

Grants and revokes are fanned out as one task per app; the two batches run
concurrently because the diff guarantees they target disjoint apps. A failed
app never blocks or undoes another app's result.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from safefamily_api.entitlements.apps import AppId, EntitlementSet, sorted_apps
from safefamily_api.provisioning.results import AppProvisionResult, Direction
from safefamily_api.utils.sanitize import hash_email

logger = logging.getLogger(__name__)


class AppProvisioner(Protocol):
    async def grant(self, app: AppId, email: str) -> AppProvisionResult: ...

    async def revoke(self, app: AppId, email: str) -> AppProvisionResult: ...


@dataclass(frozen=True)
class EntitlementDiff:
    to_grant: EntitlementSet
    to_revoke: EntitlementSet

    @property
    def is_empty(self) -> bool:
        return not self.to_grant and not self.to_revoke


def compute_diff(desired: EntitlementSet, previous: Optional[EntitlementSet]) -> EntitlementDiff:
    """to_grant = desired - previous, to_revoke = previous - desired.

    ``previous=None`` means the prior state is unknown (fresh signup): grant
    everything desired, revoke nothing.
    """
    if previous is None:
        return EntitlementDiff(to_grant=frozenset(desired), to_revoke=frozenset())
    return EntitlementDiff(
        to_grant=frozenset(desired - previous),
        to_revoke=frozenset(previous - desired),
    )


@dataclass(frozen=True)
class SyncResult:
    email: str
    diff: EntitlementDiff
    results: tuple[AppProvisionResult, ...]

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed_apps(self) -> tuple[AppProvisionResult, ...]:
        return tuple(r for r in self.results if not r.success)

    @property
    def granted(self) -> tuple[AppId, ...]:
        return tuple(r.app for r in self.results if r.success and r.direction is Direction.GRANT)

    @property
    def revoked(self) -> tuple[AppId, ...]:
        return tuple(r.app for r in self.results if r.success and r.direction is Direction.REVOKE)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "to_grant": [a.value for a in sorted_apps(self.diff.to_grant)],
            "to_revoke": [a.value for a in sorted_apps(self.diff.to_revoke)],
            "results": [r.to_dict() for r in self.results],
        }


class SyncOrchestrator:
    """Drive a provisioning client over an entitlement diff."""

    def __init__(self, client: AppProvisioner):
        self._client = client

    async def sync(
        self,
        email: str,
        desired: EntitlementSet,
        previous: Optional[EntitlementSet] = None,
    ) -> SyncResult:
        diff = compute_diff(desired, previous)
        if diff.is_empty:
            logger.info("SYNC_NOOP", extra={"customer_hash": hash_email(email)})
            return SyncResult(email=email, diff=diff, results=())

        grant_apps = sorted_apps(diff.to_grant)
        revoke_apps = sorted_apps(diff.to_revoke)

        grant_results, revoke_results = await asyncio.gather(
            asyncio.gather(*(self._client.grant(app, email) for app in grant_apps)),
            asyncio.gather(*(self._client.revoke(app, email) for app in revoke_apps)),
        )

        result = SyncResult(
            email=email,
            diff=diff,
            results=tuple(grant_results) + tuple(revoke_results),
        )

        logger.info(
            "SYNC_COMPLETED",
            extra={
                "customer_hash": hash_email(email),
                "to_grant": [a.value for a in grant_apps],
                "to_revoke": [a.value for a in revoke_apps],
                "success": result.success,
                "failed_apps": [r.app.value for r in result.failed_apps],
            },
        )
        return result
