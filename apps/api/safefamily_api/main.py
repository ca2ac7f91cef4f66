"""Safe Family provisioning API - FastAPI Application Entry Point."""

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

import httpx
import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from safefamily_api import __version__
from safefamily_api.audit.log import AuditLog
from safefamily_api.billing.dispatcher import WebhookDispatcher
from safefamily_api.billing.stripe_gateway import StripeCustomerDirectory
from safefamily_api.config.settings import ProvisioningConfig, load_config, log_config_problems
from safefamily_api.context import customer_hash_var, event_id_var, request_id_var
from safefamily_api.db.engine import build_engine, build_sessionmaker
from safefamily_api.escalation.alerts import FailureEscalator
from safefamily_api.notifications.email import Notifier, get_notifier
from safefamily_api.provisioning.client import ProvisioningClient
from safefamily_api.provisioning.retry import Sleep
from safefamily_api.provisioning.sync import SyncOrchestrator
from safefamily_api.remediation.service import RemediationService
from safefamily_api.routers import admin, health, webhooks
from safefamily_api.schemas import ProblemDetail
from safefamily_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

PROBLEM_BASE_URL = "https://getsafefamily.com/problems"


def init_error_tracking(config: ProvisioningConfig) -> bool:
    """Initialise Sentry when a DSN is configured."""
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.env,
        release=f"safefamily-provisioning@{__version__}",
        send_default_pii=False,
    )
    logger.info("SENTRY_INITIALIZED", extra={"env": config.env})
    return True


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:safefamily:trace:{request_id}" if request_id else f"urn:safefamily:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


def _problem_response(problem: ProblemDetail) -> JSONResponse:
    headers = {}
    if problem.status >= 500:
        headers["Retry-After"] = "60"
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def _install_exception_handlers(new_app: FastAPI) -> None:
    @new_app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """RFC 9457 Problem Details for HTTP exceptions (no {"detail": ...} wrapper)."""
        detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)
        return _problem_response(
            ProblemDetail(
                type=f"{PROBLEM_BASE_URL}/http-{exc.status_code}",
                title=_get_title_for_status(exc.status_code),
                status=exc.status_code,
                detail=detail_value,
                instance=_instance(),
            )
        )

    @new_app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """422 Unprocessable Entity with the first validation error as detail."""
        first_error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        return _problem_response(
            ProblemDetail(
                type=f"{PROBLEM_BASE_URL}/validation-error",
                title="Request Validation Failed",
                status=422,
                detail=f"Invalid field '{field}': {msg}",
                instance=_instance(),
            )
        )

    @new_app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """500 Internal Server Error; the exception is logged with its traceback."""
        logger.error("UNHANDLED_EXCEPTION", extra={"error_type": type(exc).__name__}, exc_info=exc)
        return _problem_response(
            ProblemDetail(
                type=f"{PROBLEM_BASE_URL}/internal-error",
                title="Internal Server Error",
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="An unexpected error occurred. Please try again later.",
                instance=_instance(),
            )
        )


def create_app(
    config: Optional[ProvisioningConfig] = None,
    *,
    engine: Optional[Engine] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    provisioning_transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[Notifier] = None,
    customers: Optional[StripeCustomerDirectory] = None,
    sleep: Sleep = asyncio.sleep,
) -> FastAPI:
    """Create the FastAPI application and wire every component.

    Args:
        config: Service configuration (defaults to ``load_config()``)
        engine: SQLAlchemy engine (defaults to one built from DATABASE_URL)
        session_factory: Session factory (defaults to one bound to ``engine``)
        provisioning_transport: httpx transport for the app admin endpoints (testing)
        notifier: Operator notification channel (defaults to ``get_notifier``)
        customers: Stripe customer directory (defaults to the live Stripe API)
        sleep: Backoff sleep used by the retry helper (testing)

    Returns:
        Configured FastAPI application instance
    """
    config = config or load_config()
    log_config_problems(config)

    engine = engine or build_engine(config.database_url)
    session_factory = session_factory or build_sessionmaker(engine)

    client = ProvisioningClient(config, transport=provisioning_transport, sleep=sleep)
    orchestrator = SyncOrchestrator(client)
    audit_log = AuditLog(session_factory)
    notifier = notifier or get_notifier(config)
    escalator = FailureEscalator(audit_log=audit_log, notifier=notifier, config=config)
    customers = customers or StripeCustomerDirectory(config.stripe_api_key)

    new_app = FastAPI(
        title="Safe Family Provisioning API",
        description="Billing-event-driven entitlement provisioning for SafeTunes, SafeTube and SafeReads.",
        version=__version__,
        docs_url="/api-docs",
        redoc_url=None,
    )

    new_app.state.config = config
    new_app.state.engine = engine
    new_app.state.session_factory = session_factory
    new_app.state.audit_log = audit_log
    new_app.state.dispatcher = WebhookDispatcher(
        config=config,
        session_factory=session_factory,
        orchestrator=orchestrator,
        customers=customers,
        audit_log=audit_log,
        escalator=escalator,
        notifier=notifier,
    )
    new_app.state.remediation = RemediationService(
        client=client,
        orchestrator=orchestrator,
        audit_log=audit_log,
    )

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(admin.router)

    _install_exception_handlers(new_app)

    # Completion logging middleware (inner)
    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Log every request completion; clears per-request context before and after."""
        event_id_var.set("")
        customer_hash_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            event_id_var.set("")
            customer_hash_var.set("")

    # Request ID middleware (outermost for context propagation)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        """Generate and propagate request_id."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


def build_default_app() -> FastAPI:
    """Application used by ``uvicorn safefamily_api.main:app``."""
    config = load_config()
    if config.json_logs:
        configure_json_logging(log_level=config.log_level)
    init_error_tracking(config)
    return create_app(config)


app = build_default_app()
