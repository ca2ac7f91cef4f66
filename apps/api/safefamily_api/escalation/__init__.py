"""Escalation of provisioning failures to a human operator."""

from safefamily_api.escalation.alerts import (
    FailureEscalator,
    ProvisioningFailureAlert,
    build_remediation_link,
    capture_to_sentry,
    render_failure_alert,
)

__all__ = [
    "FailureEscalator",
    "ProvisioningFailureAlert",
    "build_remediation_link",
    "capture_to_sentry",
    "render_failure_alert",
]
