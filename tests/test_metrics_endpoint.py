from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from showroom.core.config import get_settings
from showroom.core.database import Base, get_db
from showroom.crm.api import get_current_user
from showroom.main import app
from showroom.platform.security.context import AuthContext


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthContext:
        return AuthContext(user_id="metrics-user", correlation_id="metrics-corr-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_integrity_metrics(client: TestClient) -> None:
    assert client.get("/health").status_code == 200

    first = client.post("/api/clients", json={"name": "Metrics", "email": "metrics@example.com"})
    assert first.status_code == 201
    duplicate = client.post("/api/clients", json={"name": "Metrics 2", "email": "metrics@example.com"})
    assert duplicate.status_code == 409

    assert client.get("/api/clients/123456").status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "integrity_conflicts_total" in body
    assert "tenancy_not_found_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/clients/{id}"' in body
    assert 'reason="duplicate_email"' in body
    assert 'resource="crm.client"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404
