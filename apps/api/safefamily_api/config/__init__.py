"""Configuration loading and validation."""

from safefamily_api.config.settings import (
    AppEndpointSettings,
    ConfigError,
    EndpointStrategySettings,
    ProvisioningConfig,
    load_config,
    log_config_problems,
    validate_config,
)

__all__ = [
    "AppEndpointSettings",
    "ConfigError",
    "EndpointStrategySettings",
    "ProvisioningConfig",
    "load_config",
    "log_config_problems",
    "validate_config",
]
