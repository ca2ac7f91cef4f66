"""Result types for provisioning calls.

A single attempt returns ``Ok`` or ``Err``; expected failures (non-2xx,
network errors, timeouts) are values, not exceptions. ``ProvisioningConfigError``
is reserved for the fatal path where the client cannot even try.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from safefamily_api.entitlements.apps import AppId

T = TypeVar("T")


class Direction(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]


@dataclass(frozen=True)
class Err:
    error: str
    retryable: bool = True


Result = Union[Ok[Any], Err]


class ProvisioningConfigError(Exception):
    """Provisioning cannot be attempted (missing shared credential or endpoint)."""


@dataclass(frozen=True)
class AppProvisionResult:
    """Outcome of one grant/revoke for one app after retries."""

    app: AppId
    direction: Direction
    success: bool
    attempts: int
    error: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict = {
            "app": self.app.value,
            "direction": self.direction.value,
            "success": self.success,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.note is not None:
            data["note"] = self.note
        return data
