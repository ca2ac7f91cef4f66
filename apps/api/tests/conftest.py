"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import os

# Must be set before safefamily_api.main is imported (module-level app)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SF_JSON_LOGS", "false")

import hashlib
import hmac
import json
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from safefamily_api.audit.log import AuditLog
from safefamily_api.config.settings import ProvisioningConfig, load_config
from safefamily_api.db.models import Base
from safefamily_api.entitlements.apps import AppId
from safefamily_api.main import create_app
from safefamily_api.notifications.email import NotificationError, NotificationMessage

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_ADMIN_API_KEY = "test-app-admin-key"
TEST_ADMIN_TOKEN = "test-operator-token"
TEST_OPS_EMAIL = "ops@example.com"

BASE_TEST_ENV = {
    "SF_ENV": "test",
    "ADMIN_API_KEY": TEST_ADMIN_API_KEY,
    "STRIPE_WEBHOOK_SECRET": TEST_WEBHOOK_SECRET,
    "STRIPE_API_KEY": "sk_test_dummy",
    "ADMIN_TOKEN": TEST_ADMIN_TOKEN,
    "DATABASE_URL": "sqlite://",
    "ADMIN_NOTIFICATION_EMAIL": TEST_OPS_EMAIL,
    "SF_JSON_LOGS": "false",
}


# ============================================================================
# Stripe helpers
# ============================================================================


def stripe_signature(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(
    event_type: str,
    obj: dict,
    *,
    event_id: str = "evt_test_001",
    previous_attributes: Optional[dict] = None,
) -> bytes:
    data: dict = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "created": 1760000000, "data": data}
    ).encode("utf-8")


def checkout_session(
    email: Optional[str] = "parent@example.com",
    *,
    apps: Optional[str] = None,
    bundle: bool = True,
    amount_total: int = 999,
    name: Optional[str] = "Pat Parent",
) -> dict:
    metadata: dict = {}
    if bundle:
        metadata["bundle"] = "true"
    if apps is not None:
        metadata["apps"] = apps
    obj: dict = {
        "id": "cs_test_001",
        "object": "checkout.session",
        "customer": "cus_test_001",
        "amount_total": amount_total,
        "metadata": metadata,
        "customer_details": {"email": email, "name": name},
    }
    if email:
        obj["customer_email"] = email
    return obj


def subscription(
    status: str,
    *,
    apps: Optional[str] = None,
    bundle: bool = True,
    customer: str = "cus_test_001",
) -> dict:
    metadata: dict = {}
    if bundle:
        metadata["bundle"] = "true"
    if apps is not None:
        metadata["apps"] = apps
    return {
        "id": "sub_test_001",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
    }


# ============================================================================
# Fakes
# ============================================================================


class RecordingNotifier:
    """Notifier that keeps every message; optionally fails every send."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> None:
        if self.fail:
            raise NotificationError("Resend rejected message: HTTP 503")
        self.messages.append(message)


class FakeCustomerDirectory:
    """Stand-in for the Stripe customer lookup."""

    def __init__(self, emails: Optional[dict[str, str]] = None, error: Optional[Exception] = None):
        self.emails = emails or {}
        self.error = error
        self.lookups: list[Optional[str]] = []

    async def lookup_email(self, customer_id: Optional[str]) -> Optional[str]:
        self.lookups.append(customer_id)
        if self.error is not None:
            raise self.error
        return self.emails.get(customer_id or "")


class FakeAppBackend:
    """Mock of the three apps' admin HTTP endpoints.

    ``failing`` apps answer 500 to every provisioning call. Every request is
    recorded as ``(app, path, params)``.
    """

    def __init__(self, config: ProvisioningConfig, failing: Optional[set[AppId]] = None):
        self.failing: set[AppId] = set(failing or ())
        self.requests: list[tuple[AppId, str, dict[str, str]]] = []
        self.dashboard: dict[AppId, httpx.Response] = {}
        self._hosts = {
            urlparse(settings.base_url).hostname: app
            for app, settings in config.app_endpoints.items()
        }

    def calls_for(self, app: AppId) -> list[tuple[str, dict[str, str]]]:
        return [(path, params) for a, path, params in self.requests if a is app]

    def handler(self, request: httpx.Request) -> httpx.Response:
        app = self._hosts[request.url.host]
        params = dict(request.url.params)
        self.requests.append((app, request.url.path, params))

        if request.url.path == "/adminDashboard":
            return self.dashboard.get(app, httpx.Response(200, json=[]))
        if app in self.failing:
            return httpx.Response(500, text="Internal Server Error")
        return httpx.Response(200, json={"success": True})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


async def no_sleep(_delay: float) -> None:
    return None


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ============================================================================
# Fixtures
# ============================================================================


def make_config(**overrides: str) -> ProvisioningConfig:
    env = {**BASE_TEST_ENV, **overrides}
    return load_config(env={k: v for k, v in env.items() if v is not None})


@pytest.fixture
def config() -> ProvisioningConfig:
    return make_config()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def audit_log(session_factory) -> AuditLog:
    return AuditLog(session_factory)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def customers() -> FakeCustomerDirectory:
    return FakeCustomerDirectory({"cus_test_001": "parent@example.com"})


@pytest.fixture
def backend(config) -> FakeAppBackend:
    return FakeAppBackend(config)


@pytest.fixture
def build_client(engine, session_factory, notifier, customers, backend) -> Callable[..., TestClient]:
    """Factory for a TestClient around a fully wired app."""

    def _build(config: Optional[ProvisioningConfig] = None, **kwargs) -> TestClient:
        app = create_app(
            config or make_config(),
            engine=kwargs.pop("engine", engine),
            session_factory=kwargs.pop("session_factory", session_factory),
            provisioning_transport=kwargs.pop("provisioning_transport", backend.transport),
            notifier=kwargs.pop("notifier", notifier),
            customers=kwargs.pop("customers", customers),
            sleep=kwargs.pop("sleep", no_sleep),
        )
        return TestClient(app, raise_server_exceptions=False)

    return _build


@pytest.fixture
def client(build_client) -> TestClient:
    return build_client()
