import json
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from storefront import models, models_square  # noqa: F401
from storefront.auth import create_access_token
from storefront.config import Settings
from storefront.database import Base, build_session_factory
from storefront.encryption import CredentialVault
from storefront.main import create_app
from storefront.models import Product, ServiceItem
from storefront.oauth_state import OAuthStateSigner
from storefront.services.square_client import SquareClient
from storefront.services.square_oauth import SquareOAuthManager

ENCRYPTION_KEY = "3f" * 32
NOW = datetime(2025, 3, 1, 12, 0, 0)


class Clock:
    """Settable clock for datetime-based services"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSquare:
    """httpx.MockTransport handler standing in for the Square API"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = {}

    def on(self, method, path, json_body=None, status=200, handler=None):
        if handler is None:

            def handler(request):
                return httpx.Response(status, json=json_body if json_body is not None else {})

        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(
                404,
                json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "NOT_FOUND", "detail": "no route"}]},
            )
        return handler(request)

    def calls(self, method, path) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def bodies(self, method, path) -> list[dict]:
        return [json.loads(r.content) for r in self.calls(method, path)]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        secret_key="test-secret",
        frontend_url="https://shop.example.com",
        square_enabled=True,
        square_sync_enabled=True,
        square_application_id="sq0idp-test",
        square_application_secret="sq0csp-test",
        square_redirect_url="https://shop.example.com/api/square/oauth/callback",
        square_oauth_scopes=("ITEMS_READ", "ORDERS_WRITE"),
        square_webhook_signature_key="webhook-signature-key",
        encryption_key=ENCRYPTION_KEY,
    )


@pytest.fixture
def static_settings(settings):
    """Operator token and location configured, no OAuth round trips needed"""
    return replace(settings, square_access_token="sq-static-token", square_location_id="LOC1")


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
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_square():
    return FakeSquare()


@pytest.fixture
def vault():
    return CredentialVault(ENCRYPTION_KEY)


@pytest.fixture
def oauth_factory(db, fake_square):
    def _build(settings, clock=None):
        return build_oauth(db, settings, fake_square, clock)

    return _build


def build_oauth(db, settings, fake_square, clock=None):
    vault = CredentialVault.from_settings(settings)
    client = SquareClient(settings, transport=httpx.MockTransport(fake_square))
    kwargs = {"clock": clock} if clock else {}
    return SquareOAuthManager(db, settings, vault, OAuthStateSigner.from_vault(vault), client, **kwargs)


@pytest.fixture
def make_product(db):
    def _make(name="Lavender Soap", price="10.00", sku="SOAP-1", variation_id="VAR-SOAP-1", **kwargs):
        product = Product(
            name=name,
            price=Decimal(price),
            sku=sku,
            square_variation_id=variation_id,
            **kwargs,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_service(db):
    def _make(title="Deep Tissue Massage", variation_id="SVC-VAR-1", version="3", duration=45):
        service = ServiceItem(
            title=title,
            price=Decimal("90.00"),
            duration_minutes=duration,
            square_variation_id=variation_id,
            square_variation_version=version,
        )
        db.add(service)
        db.commit()
        db.refresh(service)
        return service

    return _make


def make_app(settings, engine, fake_square):
    app = create_app(settings=settings, engine=engine)
    app.state.square_transport = httpx.MockTransport(fake_square)
    return app


@pytest.fixture
def app_factory(engine, fake_square):
    def _build(settings):
        return make_app(settings, engine, fake_square)

    return _build


@pytest.fixture
def app(static_settings, app_factory):
    return app_factory(static_settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers(static_settings):
    token = create_access_token("admin-1", static_settings.secret_key, is_admin=True)
    return {"Authorization": f"Bearer {token}"}
