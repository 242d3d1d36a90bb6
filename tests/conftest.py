"""Shared fixtures: in-memory SQLite bound to SessionLocal, fake Stripe gateway, account tokens."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from portal_backend import config, models  # noqa: F401
from portal_backend.auth import create_access_token
from portal_backend.database import Base, SessionLocal
from portal_backend.gateway import StripeGateway, get_gateway
from portal_backend.main import app

from tests.helpers import WEBHOOK_SECRET, FakeGateway


@pytest.fixture(autouse=True)
def db_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal.configure(bind=engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "STRIPE_PRICE_COURSE", "price_course")
    monkeypatch.setattr(config, "STRIPE_PRICE_MEMBERSHIP", "price_membership")
    monkeypatch.setattr(config, "SITE_URL", "https://portal.test")
    monkeypatch.setattr(config, "JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def webhook_client():
    """Real gateway, so the signature check is Stripe's own."""
    app.dependency_overrides[get_gateway] = lambda: StripeGateway(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(account_id="acct_1", email="learner@example.com"):
        return {"Authorization": f"Bearer {create_access_token(account_id, email)}"}
    return _headers
