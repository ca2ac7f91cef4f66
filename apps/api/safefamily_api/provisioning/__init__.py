"""Provisioning client, retry policy and diff-based sync."""

from safefamily_api.provisioning.client import (
    AppEndpoint,
    GrantLifetime,
    NoEndpoint,
    ProvisioningClient,
    SetSubscriptionStatus,
    UserStatus,
)
from safefamily_api.provisioning.results import (
    AppProvisionResult,
    Direction,
    Err,
    Ok,
    ProvisioningConfigError,
)
from safefamily_api.provisioning.retry import RetryOutcome, with_retry
from safefamily_api.provisioning.sync import (
    EntitlementDiff,
    SyncOrchestrator,
    SyncResult,
    compute_diff,
)

__all__ = [
    "AppEndpoint",
    "AppProvisionResult",
    "Direction",
    "EntitlementDiff",
    "Err",
    "GrantLifetime",
    "NoEndpoint",
    "Ok",
    "ProvisioningClient",
    "ProvisioningConfigError",
    "RetryOutcome",
    "SetSubscriptionStatus",
    "SyncOrchestrator",
    "SyncResult",
    "UserStatus",
    "compute_diff",
    "with_retry",
]
