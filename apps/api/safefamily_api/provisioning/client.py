"""Provisioning client for the per-app admin HTTP endpoints.

Every app is reached with a GET carrying ``email`` and the shared ``key``
query parameters, but the verbs differ per app:

- safetunes: grantLifetime / setSubscriptionStatus?status=expired
- safetube:  setSubscriptionStatus?status=lifetime / ...status=expired
- safereads: grantLifetime / (no revoke endpoint, handled manually)

The endpoint table is built once from configuration; call sites only ever
say ``grant(app, email)`` or ``revoke(app, email)``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

from safefamily_api.config.settings import EndpointStrategySettings, ProvisioningConfig
from safefamily_api.entitlements.apps import AppId
from safefamily_api.provisioning.results import (
    AppProvisionResult,
    Direction,
    Err,
    Ok,
    ProvisioningConfigError,
    Result,
)
from safefamily_api.provisioning.retry import Sleep, with_retry
from safefamily_api.utils.sanitize import hash_email, sanitize_str

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


# ============================================================================
# Endpoint strategies
# ============================================================================


@dataclass(frozen=True)
class GrantLifetime:
    """GET {base}/grantLifetime?email=&key="""


@dataclass(frozen=True)
class SetSubscriptionStatus:
    """GET {base}/setSubscriptionStatus?email=&status=&key="""

    status: str


@dataclass(frozen=True)
class NoEndpoint:
    """The app exposes no endpoint for this direction; succeed with a note."""

    note: str


Strategy = Union[GrantLifetime, SetSubscriptionStatus, NoEndpoint]


@dataclass(frozen=True)
class AppEndpoint:
    base_url: str
    grant: Strategy
    revoke: Strategy

    def strategy_for(self, direction: Direction) -> Strategy:
        return self.grant if direction is Direction.GRANT else self.revoke


def strategy_from_settings(settings: EndpointStrategySettings) -> Strategy:
    if settings.kind == "grant_lifetime":
        return GrantLifetime()
    if settings.kind == "set_subscription_status":
        if not settings.status:
            raise ProvisioningConfigError("set_subscription_status strategy requires a status")
        return SetSubscriptionStatus(status=settings.status)
    return NoEndpoint(note=settings.note or "manual handling required")


def build_endpoint_table(config: ProvisioningConfig) -> dict[AppId, AppEndpoint]:
    """Translate endpoint settings into the client's strategy table."""
    return {
        app: AppEndpoint(
            base_url=settings.base_url.rstrip("/"),
            grant=strategy_from_settings(settings.grant),
            revoke=strategy_from_settings(settings.revoke),
        )
        for app, settings in config.app_endpoints.items()
    }


# ============================================================================
# Status check
# ============================================================================


@dataclass(frozen=True)
class UserStatus:
    """A customer's record in one app, as seen through its admin dashboard."""

    app: AppId
    found: bool
    status: Optional[str] = None
    created_at: Any = None
    error: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict = {"app": self.app.value, "found": self.found}
        if self.status is not None:
            data["status"] = self.status
        if self.created_at is not None:
            data["created_at"] = self.created_at
        if self.error is not None:
            data["error"] = self.error
        if self.note is not None:
            data["note"] = self.note
        return data


# ============================================================================
# Client
# ============================================================================


class ProvisioningClient:
    """Grant/revoke access in one app with bounded retry.

    Holds only immutable configuration; each call opens its own HTTP client,
    so calls are independent and safe to run concurrently.
    """

    def __init__(
        self,
        config: ProvisioningConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._admin_key = config.admin_api_key
        self._endpoints = build_endpoint_table(config)
        self._timeout = config.provision_timeout_seconds
        self._max_attempts = config.provision_max_attempts
        self._initial_delay = config.provision_initial_delay_seconds
        self._transport = transport
        self._sleep = sleep

    @property
    def endpoints(self) -> dict[AppId, AppEndpoint]:
        return dict(self._endpoints)

    async def grant(self, app: AppId, email: str) -> AppProvisionResult:
        return await self._provision(app, email, Direction.GRANT)

    async def revoke(self, app: AppId, email: str) -> AppProvisionResult:
        return await self._provision(app, email, Direction.REVOKE)

    def _require_endpoint(self, app: AppId) -> tuple[AppEndpoint, str]:
        """Return the app's endpoint and the admin key to call it with."""
        if not self._admin_key:
            raise ProvisioningConfigError("ADMIN_API_KEY not configured")
        endpoint = self._endpoints.get(app)
        if endpoint is None:
            raise ProvisioningConfigError(f"No endpoint configured for {app.value}")
        return endpoint, self._admin_key

    async def _provision(self, app: AppId, email: str, direction: Direction) -> AppProvisionResult:
        customer_hash = hash_email(email)
        try:
            endpoint, admin_key = self._require_endpoint(app)
        except ProvisioningConfigError as e:
            logger.error(
                "PROVISION_CONFIG_MISSING",
                extra={
                    "app": app.value,
                    "direction": direction.value,
                    "customer_hash": customer_hash,
                    "error": str(e),
                },
            )
            return AppProvisionResult(
                app=app, direction=direction, success=False, attempts=0, error=str(e)
            )

        strategy = endpoint.strategy_for(direction)
        if isinstance(strategy, NoEndpoint):
            logger.info(
                "PROVISION_MANUAL_HANDLING_REQUIRED",
                extra={
                    "app": app.value,
                    "direction": direction.value,
                    "customer_hash": customer_hash,
                    "note": strategy.note,
                },
            )
            return AppProvisionResult(
                app=app, direction=direction, success=True, attempts=0, note=strategy.note
            )

        path, params = self._request_for(strategy, email, admin_key)
        url = f"{endpoint.base_url}{path}"

        async def attempt() -> Result:
            return await self._call(url, params)

        outcome = await with_retry(
            attempt,
            max_attempts=self._max_attempts,
            initial_delay=self._initial_delay,
            sleep=self._sleep,
            label=f"{direction.value}:{app.value}",
        )

        log_extra = {
            "app": app.value,
            "direction": direction.value,
            "customer_hash": customer_hash,
            "attempts": outcome.attempts,
        }
        if outcome.success:
            logger.info("PROVISION_SUCCEEDED", extra=log_extra)
        else:
            logger.error("PROVISION_FAILED", extra={**log_extra, "error": outcome.error})

        return AppProvisionResult(
            app=app,
            direction=direction,
            success=outcome.success,
            attempts=outcome.attempts,
            error=outcome.error,
        )

    def _request_for(
        self, strategy: Strategy, email: str, admin_key: str
    ) -> tuple[str, dict[str, str]]:
        if isinstance(strategy, GrantLifetime):
            return "/grantLifetime", {"email": email, "key": admin_key}
        if isinstance(strategy, SetSubscriptionStatus):
            return "/setSubscriptionStatus", {
                "email": email,
                "status": strategy.status,
                "key": admin_key,
            }
        raise ProvisioningConfigError(f"Strategy {strategy!r} has no HTTP request")

    async def _call(self, url: str, params: dict[str, str]) -> Result:
        """One HTTP attempt. Non-2xx, network errors and timeouts are retryable."""
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException:
            return Err(f"Timeout after {self._timeout:g}s")
        except httpx.HTTPError as e:
            return Err(sanitize_str(str(e)) or type(e).__name__)

        if not response.is_success:
            body = response.text[:_ERROR_BODY_LIMIT]
            return Err(f"HTTP {response.status_code} - {sanitize_str(body)}")

        try:
            return Ok(response.json())
        except ValueError:
            return Ok(response.text)

    async def fetch_user_status(self, app: AppId, email: str) -> UserStatus:
        """Look the customer up in an app's admin dashboard listing (single attempt)."""
        try:
            endpoint, admin_key = self._require_endpoint(app)
        except ProvisioningConfigError as e:
            return UserStatus(app=app, found=False, error=str(e))

        params = {"key": admin_key, "format": "json"}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(f"{endpoint.base_url}/adminDashboard", params=params)
        except httpx.TimeoutException:
            return UserStatus(app=app, found=False, error=f"Timeout after {self._timeout:g}s")
        except httpx.HTTPError as e:
            return UserStatus(app=app, found=False, error=sanitize_str(str(e)) or type(e).__name__)

        if not response.is_success:
            return UserStatus(app=app, found=False, error=f"HTTP {response.status_code}")

        if "text/html" in response.headers.get("content-type", ""):
            return UserStatus(app=app, found=False, note="app has no JSON user listing")

        try:
            users = response.json()
        except ValueError:
            return UserStatus(app=app, found=False, error="Invalid JSON from admin dashboard")

        if isinstance(users, dict):
            users = users.get("users", [])
        if not isinstance(users, list):
            return UserStatus(app=app, found=False, error="Unexpected admin dashboard shape")

        wanted = email.strip().lower()
        for user in users:
            if not isinstance(user, dict):
                continue
            if str(user.get("email", "")).strip().lower() == wanted:
                return UserStatus(
                    app=app,
                    found=True,
                    status=user.get("subscriptionStatus"),
                    created_at=user.get("createdAt"),
                )
        return UserStatus(app=app, found=False)
