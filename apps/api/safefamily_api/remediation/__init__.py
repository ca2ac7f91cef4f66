"""Manual remediation workflow."""

from safefamily_api.remediation.service import RemediationService

__all__ = ["RemediationService"]
