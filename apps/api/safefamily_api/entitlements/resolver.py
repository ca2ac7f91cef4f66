"""Entitlement target resolution from billing-event metadata.

Stripe checkout sessions and subscriptions carry two metadata keys that
matter here:

- ``apps``: comma-separated app identifiers the customer paid for. Bundles
  sold before per-app selection existed have no ``apps`` key at all and are
  entitled to every app.
- ``bundle``: ``"true"`` when the purchase is a Safe Family bundle.
"""

from typing import Mapping, Optional

from safefamily_api.entitlements.apps import ALL_APPS, EntitlementSet, parse_app_list

APPS_METADATA_KEY = "apps"
BUNDLE_METADATA_KEY = "bundle"


def resolve_entitlements(metadata: Optional[Mapping[str, object]]) -> EntitlementSet:
    """Compute the set of apps a customer should have.

    Never raises. An absent ``apps`` field is the legacy bundle shape and
    resolves to every app; a list that filters down to nothing degrades to
    the same full-set default.
    """
    if not metadata:
        return ALL_APPS

    raw = metadata.get(APPS_METADATA_KEY)
    if not isinstance(raw, str) or not raw.strip():
        return ALL_APPS

    apps = parse_app_list(raw.split(","))
    if not apps:
        return ALL_APPS
    return frozenset(apps)


def is_bundle(metadata: Optional[Mapping[str, object]]) -> bool:
    """True when the metadata marks the purchase as a bundle."""
    if not metadata:
        return False
    return str(metadata.get(BUNDLE_METADATA_KEY, "")).strip().lower() == "true"
