"""Provisioning service configuration.

Loaded once at startup from:
1. config/app_endpoints.yaml (per-app base URLs and endpoint strategies)
2. Environment variables (secrets, overrides, tuning)

The resulting ``ProvisioningConfig`` is frozen and handed to the components
that need it. Nothing outside this module reads ``os.environ``.
"""

import logging
import os
from pathlib import Path
from typing import Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from safefamily_api.entitlements.apps import APP_ORDER, AppId

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS_FILE = (
    Path(__file__).resolve().parent.parent.parent.parent.parent / "config" / "app_endpoints.yaml"
)

PROD_ENVS = frozenset({"prod", "production"})

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class ConfigError(Exception):
    """Raised when configuration cannot be loaded at all."""


class EndpointStrategySettings(BaseModel):
    """How one direction (grant or revoke) is carried out for an app."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["grant_lifetime", "set_subscription_status", "none"]
    status: Optional[str] = None
    note: Optional[str] = None


class AppEndpointSettings(BaseModel):
    """Base URL plus grant/revoke strategies for one app."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    grant: EndpointStrategySettings
    revoke: EndpointStrategySettings


class ProvisioningConfig(BaseModel):
    """Immutable service configuration."""

    model_config = ConfigDict(frozen=True)

    env: str = Field(default="dev", description="Deployment environment (SF_ENV)")

    # Shared secret accepted by every app's admin endpoints
    admin_api_key: Optional[str] = None

    stripe_webhook_secret: Optional[str] = None
    stripe_api_key: Optional[str] = None

    # Operator token for /admin/* endpoints
    admin_token: Optional[str] = None

    database_url: Optional[str] = None

    app_endpoints: dict[AppId, AppEndpointSettings] = Field(default_factory=dict)

    # Notifications
    resend_api_key: Optional[str] = None
    admin_notification_email: Optional[str] = None
    notification_from_email: str = "Safe Family <notifications@getsafefamily.com>"
    remediation_base_url: str = "https://getsafefamily.com"

    # Provisioning client tuning
    provision_timeout_seconds: float = 10.0
    provision_max_attempts: int = 3
    provision_initial_delay_seconds: float = 1.0

    # Webhook dedup retention
    dedup_retention_hours: int = 72
    dedup_purge_interval_seconds: int = 3600

    sentry_dsn: Optional[str] = None
    json_logs: bool = True
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.env in PROD_ENVS


def _load_endpoint_file(path: Path) -> dict[AppId, AppEndpointSettings]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"App endpoint file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"App endpoint file is not valid YAML: {path}") from e

    apps_section = raw.get("apps") if isinstance(raw, dict) else None
    if not isinstance(apps_section, dict):
        raise ConfigError(f"App endpoint file has no 'apps' mapping: {path}")

    endpoints: dict[AppId, AppEndpointSettings] = {}
    for name, body in apps_section.items():
        try:
            app = AppId(name)
        except ValueError:
            logger.warning("CONFIG_UNKNOWN_APP_IGNORED", extra={"app": name, "path": str(path)})
            continue
        endpoints[app] = AppEndpointSettings.model_validate(body)
    return endpoints


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_config(
    env: Optional[Mapping[str, str]] = None,
    endpoints_file: Optional[Path] = None,
) -> ProvisioningConfig:
    """Build the service configuration.

    Args:
        env: Environment mapping (defaults to ``os.environ``).
        endpoints_file: App endpoint YAML (defaults to SF_APP_ENDPOINTS_FILE or
            config/app_endpoints.yaml at the repository root).

    Raises:
        ConfigError: If the endpoint file is missing or malformed.
    """
    env = os.environ if env is None else env

    path = endpoints_file or Path(_get(env, "SF_APP_ENDPOINTS_FILE") or DEFAULT_ENDPOINTS_FILE)
    endpoints = _load_endpoint_file(path)

    # SF_<APP>_BASE_URL overrides the file
    for app in APP_ORDER:
        override = _get(env, f"SF_{app.value.upper()}_BASE_URL")
        if override and app in endpoints:
            endpoints[app] = endpoints[app].model_copy(update={"base_url": override})

    values: dict = {
        "env": (_get(env, "SF_ENV") or "dev").lower(),
        "admin_api_key": _get(env, "ADMIN_API_KEY"),
        "stripe_webhook_secret": _get(env, "STRIPE_WEBHOOK_SECRET"),
        "stripe_api_key": _get(env, "STRIPE_API_KEY") or _get(env, "STRIPE_SECRET_KEY"),
        "admin_token": _get(env, "ADMIN_TOKEN"),
        "database_url": _get(env, "DATABASE_URL"),
        "app_endpoints": endpoints,
        "resend_api_key": _get(env, "RESEND_API_KEY"),
        "admin_notification_email": _get(env, "ADMIN_NOTIFICATION_EMAIL"),
        "sentry_dsn": _get(env, "SENTRY_DSN"),
        "log_level": (_get(env, "LOG_LEVEL") or "INFO").upper(),
    }

    optional_values = {
        "notification_from_email": _get(env, "NOTIFICATION_FROM_EMAIL"),
        "remediation_base_url": _get(env, "REMEDIATION_BASE_URL"),
        "provision_timeout_seconds": _get(env, "SF_PROVISION_TIMEOUT_SECONDS"),
        "provision_max_attempts": _get(env, "SF_PROVISION_MAX_ATTEMPTS"),
        "provision_initial_delay_seconds": _get(env, "SF_PROVISION_INITIAL_DELAY_SECONDS"),
        "dedup_retention_hours": _get(env, "SF_WEBHOOK_DEDUP_RETENTION_HOURS"),
        "dedup_purge_interval_seconds": _get(env, "SF_WEBHOOK_DEDUP_PURGE_INTERVAL_SECONDS"),
    }
    values.update({k: v for k, v in optional_values.items() if v is not None})

    json_logs = _get(env, "SF_JSON_LOGS")
    if json_logs is not None:
        values["json_logs"] = json_logs.lower() in _TRUTHY

    return ProvisioningConfig.model_validate(values)


def validate_config(config: ProvisioningConfig) -> list[str]:
    """Return human-readable configuration problems (empty list if none).

    Missing secrets are not fatal at startup: the affected path fails fast on
    first use (webhook → 500, provisioning → failed result without network).
    """
    problems: list[str] = []

    if not config.admin_api_key:
        problems.append("ADMIN_API_KEY is not set; every provisioning call will fail")
    if not config.stripe_webhook_secret:
        problems.append("STRIPE_WEBHOOK_SECRET is not set; webhooks will be rejected with 500")
    if not config.stripe_api_key:
        problems.append("STRIPE_API_KEY is not set; subscription events cannot resolve customer email")
    if not config.admin_token:
        problems.append("ADMIN_TOKEN is not set; admin endpoints are disabled")
    if not config.resend_api_key or not config.admin_notification_email:
        problems.append(
            "RESEND_API_KEY/ADMIN_NOTIFICATION_EMAIL not set; alerts will only be logged"
        )

    missing_apps = [app.value for app in APP_ORDER if app not in config.app_endpoints]
    if missing_apps:
        problems.append(f"No endpoint configured for apps: {', '.join(missing_apps)}")

    if config.provision_max_attempts < 1:
        problems.append("SF_PROVISION_MAX_ATTEMPTS must be >= 1")
    if config.provision_timeout_seconds <= 0:
        problems.append("SF_PROVISION_TIMEOUT_SECONDS must be > 0")

    if config.is_production and not config.database_url:
        problems.append("DATABASE_URL is required in production (SF_ENV=prod/production)")

    return problems


def log_config_problems(config: ProvisioningConfig) -> list[str]:
    """Validate and log each problem once at startup."""
    problems = validate_config(config)
    for problem in problems:
        logger.error("CONFIG_PROBLEM", extra={"problem": problem, "env": config.env})
    if not problems:
        logger.info("CONFIG_OK", extra={"env": config.env})
    return problems
