"""Safe Family entitlement provisioning service."""

__version__ = "1.4.0"
