"""The closed set of Safe Family apps a customer can be entitled to."""

from enum import Enum
from typing import Iterable


class AppId(str, Enum):
    """App identifiers as they appear in Stripe metadata and admin requests."""

    SAFETUNES = "safetunes"
    SAFETUBE = "safetube"
    SAFEREADS = "safereads"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    AppId.SAFETUNES: "SafeTunes",
    AppId.SAFETUBE: "SafeTube",
    AppId.SAFEREADS: "SafeReads",
}

# Canonical order; used whenever results are listed or rendered.
APP_ORDER: tuple[AppId, ...] = (AppId.SAFETUNES, AppId.SAFETUBE, AppId.SAFEREADS)

EntitlementSet = frozenset[AppId]

ALL_APPS: EntitlementSet = frozenset(APP_ORDER)


def parse_app_list(values: Iterable[str]) -> list[AppId]:
    """Keep recognised app identifiers, deduplicated, in canonical order."""
    wanted = set()
    for value in values:
        if not isinstance(value, str):
            continue
        candidate = value.strip().lower()
        try:
            wanted.add(AppId(candidate))
        except ValueError:
            continue
    return [app for app in APP_ORDER if app in wanted]


def sorted_apps(apps: Iterable[AppId]) -> list[AppId]:
    """Return apps in canonical order."""
    members = set(apps)
    return [app for app in APP_ORDER if app in members]
