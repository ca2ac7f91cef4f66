"""Utility functions and helpers."""

from safefamily_api.utils.logging import JSONFormatter, configure_json_logging
from safefamily_api.utils.sanitize import hash_email, payload_hash_bytes, sanitize_str

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "hash_email",
    "payload_hash_bytes",
    "sanitize_str",
]
