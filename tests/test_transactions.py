from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql.dml import Delete

from showroom.core.config import get_settings
from showroom.core.database import Base, get_db
from showroom.crm.api import get_current_user
from showroom.crm.models import Car, Client, Note, Opportunity
from showroom.crm.service import car_service, client_service
from showroom.main import app
from showroom.metrics import integrity_conflicts_total
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
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthContext:
        return AuthContext(user_id="alice")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_failed_opportunity_delete_keeps_notes(
    client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    owner = client.post("/api/clients", json={"name": "Rollback"}).json()
    opportunity = client.post("/api/opportunities", json={"client_id": owner["id"], "car_label": "Argo"}).json()
    for index in range(2):
        client.post("/api/notes", json={"opportunity_id": opportunity["id"], "title": f"n{index}", "content": "c"})

    real_execute = db_session.execute

    def failing_execute(statement: Any, *args: Any, **kwargs: Any) -> Any:
        if isinstance(statement, Delete) and statement.table.name == "opportunity":
            raise IntegrityError("DELETE FROM opportunity", {}, Exception("forced failure"))
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", failing_execute)
    response = client.delete(f"/api/opportunities/{opportunity['id']}")
    monkeypatch.undo()

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"

    assert db_session.scalar(select(func.count()).select_from(Opportunity)) == 1
    assert db_session.scalar(select(func.count()).where(Note.opportunity_id == opportunity["id"])) == 2
    assert len(client.get(f"/api/opportunities/{opportunity['id']}/notes").json()["items"]) == 2


def test_duplicate_email_caught_by_unique_constraint(
    client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    counter = integrity_conflicts_total.labels(resource="crm.client", reason="constraint")
    before = counter._value.get()
    assert client.post("/api/clients", json={"name": "First", "email": "race@example.com"}).status_code == 201

    monkeypatch.setattr(client_service, "_ensure_email_available", lambda *args, **kwargs: None)
    loser = client.post("/api/clients", json={"name": "Second", "email": "race@example.com"})

    assert loser.status_code == 409
    assert loser.json()["code"] == "conflict"
    assert loser.json()["message"] == "a client with this email already exists"
    assert counter._value.get() == before + 1
    assert db_session.scalar(select(func.count()).select_from(Client)) == 1

    assert client.post("/api/clients", json={"name": "Third", "email": "other@example.com"}).status_code == 201


def test_duplicate_car_caught_by_unique_index(
    client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert client.post("/api/cars", json={"brand": "Ford", "model": "Ka"}).status_code == 201

    monkeypatch.setattr(car_service, "_ensure_unique_car", lambda *args, **kwargs: None)
    loser = client.post("/api/cars", json={"brand": "Ford", "model": "Ka", "version": " "})

    assert loser.status_code == 409
    assert loser.json()["message"] == "this car model is already registered"
    assert db_session.scalar(select(func.count()).select_from(Car)) == 1
