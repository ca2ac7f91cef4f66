"""App enum and entitlement-set resolution."""

from safefamily_api.entitlements.apps import (
    ALL_APPS,
    APP_ORDER,
    AppId,
    EntitlementSet,
    parse_app_list,
    sorted_apps,
)
from safefamily_api.entitlements.resolver import is_bundle, resolve_entitlements

__all__ = [
    "ALL_APPS",
    "APP_ORDER",
    "AppId",
    "EntitlementSet",
    "is_bundle",
    "parse_app_list",
    "resolve_entitlements",
    "sorted_apps",
]
