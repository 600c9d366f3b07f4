"""Shared fixtures: in-memory SQLite ledger and a wired FastAPI test client."""

import json
import os

# Settings are read once at import time, so the environment must be set first.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from loyalty.common.config import LoyaltyConfig
from loyalty.common.db import Base, make_session_factory
from loyalty.services.points import models  # noqa: F401  (registers tables)
from loyalty.services.points.service import LoyaltyService
from loyalty.services.points.webhooks import SIGNATURE_HEADER, WebhookIngress, compute_signature

SECRET = "test-secret"
API_KEY = "test-api-key"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def config():
    return LoyaltyConfig(webhook_secret=SECRET, storage_retry_backoff_seconds=0.0)


@pytest.fixture
def service(session_factory, config):
    return LoyaltyService(session_factory, config, service_name="loyalty-test")


@pytest.fixture
def ingress(service, config):
    return WebhookIngress(service, config)


@pytest.fixture
def client(service, ingress):
    from loyalty.services.points.main import app, get_ingress, get_service

    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_ingress] = lambda: ingress
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def signed(payload: dict, secret: str = SECRET) -> tuple[bytes, dict]:
    """Serialize `payload` and build headers carrying its signature."""

    raw = json.dumps(payload).encode("utf-8")
    return raw, {"content-type": "application/json", SIGNATURE_HEADER: compute_signature(raw, secret)}
