"""Admin endpoints for provisioning remediation.

WARNING: These endpoints are for authorized operators only.
- Protected by X-Admin-Token header
- Status checks and re-provisioning are audit logged
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from safefamily_api.audit.log import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, AuditAction, AuditLog
from safefamily_api.context import request_id_var
from safefamily_api.entitlements.apps import APP_ORDER, parse_app_list
from safefamily_api.remediation.service import RemediationService
from safefamily_api.schemas import (
    AppResult,
    AppStatus,
    AuditLogItem,
    AuditLogPage,
    ProvisioningStatusResponse,
    RetryProvisionRequest,
    RetryProvisionResponse,
)
from safefamily_api.utils.sanitize import hash_email

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)

ADMIN_ACTOR_HEADER = "X-Admin-Actor"


# ============================================================================
# Helpers
# ============================================================================


def verify_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    """Verify admin token from header.

    Raises:
        HTTPException 401: If token is missing or invalid
        HTTPException 500: If ADMIN_TOKEN not configured
    """
    expected_token = request.app.state.config.admin_token
    if not expected_token:
        logger.error("ADMIN_TOKEN_NOT_CONFIGURED")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    # Constant-time comparison to prevent timing attacks
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected_token):
        logger.warning(
            "ADMIN_AUTH_FAILED",
            extra={"request_id": request_id_var.get(), "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


def get_actor(
    x_admin_actor: Optional[str] = Header(None, alias=ADMIN_ACTOR_HEADER),
) -> str:
    """Operator identity for audit entries (defaults to 'admin')."""
    return (x_admin_actor or "admin").strip() or "admin"


def get_remediation(request: Request) -> RemediationService:
    return request.app.state.remediation


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit_log


# ============================================================================
# Provisioning status / retry
# ============================================================================


@router.get(
    "/provisioning/status",
    response_model=ProvisioningStatusResponse,
    dependencies=[Depends(verify_admin_token)],
)
async def provisioning_status(
    email: str = Query(..., min_length=3, description="Customer email"),
    actor: str = Depends(get_actor),
    remediation: RemediationService = Depends(get_remediation),
) -> ProvisioningStatusResponse:
    """Per-app record for a customer (found, status, created_at)."""
    statuses = await remediation.check_status(email, actor=actor)
    return ProvisioningStatusResponse(
        email=email,
        apps=[AppStatus(**s.to_dict()) for s in statuses],
    )


@router.post(
    "/provisioning/retry",
    response_model=RetryProvisionResponse,
    dependencies=[Depends(verify_admin_token)],
)
async def retry_provision(
    body: RetryProvisionRequest,
    actor: str = Depends(get_actor),
    remediation: RemediationService = Depends(get_remediation),
):
    """Re-grant the given apps after payment was confirmed out of band.

    200 when every app succeeded or at least one did (``success`` false on
    partial success); 500 when every app failed.
    """
    apps = parse_app_list(body.apps)
    if not apps:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid app names provided. Valid apps: "
            + ", ".join(app.value for app in APP_ORDER),
        )

    email = body.email.strip()
    logger.info(
        "ADMIN_RETRY_PROVISION_REQUESTED",
        extra={"customer_hash": hash_email(email), "apps": [a.value for a in apps], "actor": actor},
    )

    result = await remediation.reprovision(email, apps, actor=actor)

    results = [AppResult(**r.to_dict()) for r in result.results]
    succeeded = [r.app.value for r in result.results if r.success]
    failed = [r.app.value for r in result.failed_apps]

    if not failed:
        return RetryProvisionResponse(
            success=True,
            message=f"Successfully provisioned {', '.join(succeeded)} for {email}",
            results=results,
        )
    if succeeded:
        return RetryProvisionResponse(
            success=False,
            message=(
                f"Partial success: {', '.join(succeeded)} succeeded, "
                f"{', '.join(failed)} failed"
            ),
            results=results,
        )

    response = RetryProvisionResponse(
        success=False,
        message=f"All provisioning attempts failed for {email}",
        results=results,
    )
    return JSONResponse(status_code=500, content=response.model_dump(exclude_none=True))


# ============================================================================
# Audit log
# ============================================================================


@router.get(
    "/audit-logs",
    response_model=AuditLogPage,
    dependencies=[Depends(verify_admin_token)],
)
async def list_audit_logs(
    action: Optional[AuditAction] = Query(None, description="Filter by action kind"),
    target_email: Optional[str] = Query(None, description="Case-insensitive substring match"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    audit_log: AuditLog = Depends(get_audit_log),
) -> AuditLogPage:
    """Audit entries, newest first."""
    entries, total = audit_log.query(
        action=action.value if action else None,
        target_email=target_email,
        limit=limit,
        offset=offset,
    )
    return AuditLogPage(
        items=[AuditLogItem(**entry.to_dict()) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )
