"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors."""

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# POST /webhooks/stripe - Response
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to Stripe once an event is verified."""

    received: bool = True
    status: str = Field(..., description="processed | already_processed | ignored")
    event_id: Optional[str] = None
    event_type: Optional[str] = None


# ============================================================================
# Admin provisioning
# ============================================================================


class AppResult(BaseModel):
    """Per-app outcome of a (re-)provisioning call."""

    app: str
    direction: str = "grant"
    success: bool
    attempts: int
    error: Optional[str] = None
    note: Optional[str] = None


class RetryProvisionRequest(BaseModel):
    """Request body for POST /admin/provisioning/retry."""

    email: str = Field(..., min_length=3, max_length=320, description="Customer email")
    apps: list[str] = Field(..., min_length=1, description="App identifiers to grant")


class RetryProvisionResponse(BaseModel):
    """Response for POST /admin/provisioning/retry."""

    success: bool
    message: str
    results: list[AppResult]


class AppStatus(BaseModel):
    """Customer record in one app."""

    app: str
    found: bool
    status: Optional[str] = None
    created_at: Any = None
    error: Optional[str] = None
    note: Optional[str] = None


class ProvisioningStatusResponse(BaseModel):
    """Response for GET /admin/provisioning/status."""

    email: str
    apps: list[AppStatus]


# ============================================================================
# GET /admin/audit-logs - Response
# ============================================================================


class AuditLogItem(BaseModel):
    id: int
    created_at: Optional[str] = None
    actor: str
    action: str
    target_email: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditLogPage(BaseModel):
    items: list[AuditLogItem]
    total: int
    limit: int
    offset: int
