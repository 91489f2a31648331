from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from showroom.core.config import get_settings
from showroom.core.database import Base, get_db
from showroom.crm.api import get_current_user, get_optional_user
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
    app.dependency_overrides[get_optional_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_car(test_client: TestClient, **payload: object) -> dict:
    response = test_client.post("/api/cars", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_duplicate_car_conflicts(client: TestClient) -> None:
    _create_car(client, brand="Ford", model="Ka", version="SE", year=2022)

    duplicate = client.post("/api/cars", json={"brand": "Ford", "model": "Ka", "version": "SE", "year": 2022})
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "this car model is already registered"

    for variant in (
        {"brand": "Fiat", "model": "Ka", "version": "SE", "year": 2022},
        {"brand": "Ford", "model": "Ranger", "version": "SE", "year": 2022},
        {"brand": "Ford", "model": "Ka", "version": "SEL", "year": 2022},
        {"brand": "Ford", "model": "Ka", "version": "SE", "year": 2021},
        {"brand": "Ford", "model": "Ka", "year": 2022},
        {"brand": "Ford", "model": "Ka", "version": "SE"},
    ):
        assert client.post("/api/cars", json=variant).status_code == 201


def test_absent_fields_compare_equal(client: TestClient) -> None:
    _create_car(client, brand="Renault", model="Kwid")

    assert client.post("/api/cars", json={"brand": "Renault", "model": "Kwid"}).status_code == 409
    assert client.post("/api/cars", json={"brand": "Renault", "model": "Kwid", "version": "  "}).status_code == 409


def test_year_out_of_range_is_invalid(client: TestClient) -> None:
    assert client.post("/api/cars", json={"brand": "Ford", "model": "T", "year": 1899}).status_code == 422
    assert client.post("/api/cars", json={"brand": "Ford", "model": "T", "year": 2101}).status_code == 422
    assert client.post("/api/cars", json={"brand": "", "model": "T"}).status_code == 422


def test_update_revalidates_resulting_tuple(client: TestClient) -> None:
    _create_car(client, brand="Honda", model="Civic", version="EXL", year=2023)
    other = _create_car(client, brand="Honda", model="Civic", version="Touring", year=2023)

    clash = client.patch(f"/api/cars/{other['id']}", json={"version": "EXL"})
    assert clash.status_code == 409

    fine = client.patch(f"/api/cars/{other['id']}", json={"version": "EXL", "year": 2024})
    assert fine.status_code == 200
    assert fine.json()["version"] == "EXL"
    assert fine.json()["year"] == 2024

    unchanged = client.patch(f"/api/cars/{other['id']}", json={"year": 2024})
    assert unchanged.status_code == 200

    assert client.patch("/api/cars/98765", json={"year": 2024}).status_code == 404


def test_delete_car_without_opportunities(client: TestClient) -> None:
    car = _create_car(client, brand="Kia", model="Sportage")

    assert client.delete(f"/api/cars/{car['id']}").status_code == 200
    assert client.get(f"/api/cars/{car['id']}").status_code == 404


def test_catalogue_reads_are_public(client: TestClient) -> None:
    car = _create_car(client, brand="Toyota", model="Yaris", year=2024)
    app.dependency_overrides.pop(get_current_user)

    assert client.get("/api/cars").status_code == 200
    assert client.get(f"/api/cars/{car['id']}").status_code == 200
    assert client.get("/api/cars/brands").json() == ["Toyota"]
    assert client.get("/api/cars/search", params={"query": "yar"}).status_code == 200

    assert client.post("/api/cars", json={"brand": "X", "model": "Y"}).status_code == 401
    assert client.delete(f"/api/cars/{car['id']}").status_code == 401
    assert client.get("/api/cars/stats").status_code == 401


def test_list_orders_brand_model_then_newest_year(client: TestClient) -> None:
    _create_car(client, brand="VW", model="Polo", year=2020)
    _create_car(client, brand="Audi", model="A3")
    _create_car(client, brand="VW", model="Polo", year=2024)
    _create_car(client, brand="Audi", model="A3", year=2019)
    _create_car(client, brand="VW", model="Golf", year=2018)

    items = client.get("/api/cars").json()["items"]
    assert [(item["brand"], item["model"], item["year"]) for item in items] == [
        ("Audi", "A3", 2019),
        ("Audi", "A3", None),
        ("VW", "Golf", 2018),
        ("VW", "Polo", 2024),
        ("VW", "Polo", 2020),
    ]

    walked: list[int] = []
    cursor = None
    while True:
        params = {"limit": 2} if cursor is None else {"limit": 2, "cursor": cursor}
        page = client.get("/api/cars", params=params).json()
        walked.extend(item["id"] for item in page["items"])
        cursor = page["next_cursor"]
        if cursor is None:
            break
    assert walked == [item["id"] for item in items]


def test_brand_filters_and_search(client: TestClient) -> None:
    _create_car(client, brand="Chevrolet", model="Onix", version="LT", year=2023)
    _create_car(client, brand="Chevrolet", model="Tracker", year=2024)
    _create_car(client, brand="Chevrolet", model="Onix", version="Premier", year=2024)
    _create_car(client, brand="Citroen", model="C3")

    assert len(client.get("/api/cars", params={"brand": "Chevrolet"}).json()["items"]) == 3
    assert client.get("/api/cars", params={"brand": "chevrolet"}).json()["items"] == []

    by_term = client.get("/api/cars", params={"search_term": "premier"}).json()["items"]
    assert [item["version"] for item in by_term] == ["Premier"]

    by_brand = client.get("/api/cars/by-brand", params={"brand": "chev"}).json()
    assert [(item["model"], item["year"]) for item in by_brand] == [
        ("Onix", 2024),
        ("Onix", 2023),
        ("Tracker", 2024),
    ]

    models = client.get("/api/cars/models", params={"brand": "Chevrolet"}).json()
    assert [item["model"] for item in models] == ["Onix", "Onix", "Tracker"]
    assert set(models[0]) == {"id", "model", "version", "year"}

    assert client.get("/api/cars/brands").json() == ["Chevrolet", "Citroen"]

    search = client.get("/api/cars/search", params={"query": "c", "limit": 2}).json()
    assert len(search) == 2
    assert client.get("/api/cars/search", params={"query": "c", "limit": 21}).status_code == 422


def test_car_detail_and_stats(client: TestClient) -> None:
    popular = _create_car(client, brand="Hyundai", model="Creta")
    _create_car(client, brand="Hyundai", model="HB20")
    _create_car(client, brand="Nissan", model="Kicks")
    owner = client.post("/api/clients", json={"name": "Igor", "email": "igor@example.com"}).json()
    for _ in range(2):
        client.post(
            "/api/opportunities",
            json={"client_id": owner["id"], "car_label": "Creta", "car_model_id": popular["id"]},
        )

    detail = client.get(f"/api/cars/{popular['id']}").json()
    assert detail["opportunities_count"] == 2
    assert detail["opportunities"][0]["client"] == {
        "id": owner["id"],
        "name": "Igor",
        "email": "igor@example.com",
        "phone": None,
    }

    stats = client.get("/api/cars/stats").json()
    assert stats["total_cars"] == 3
    assert stats["cars_by_brand"][0] == {"brand": "Hyundai", "count": 2}
    assert stats["most_used_cars"][0]["id"] == popular["id"]
    assert stats["most_used_cars"][0]["opportunities_count"] == 2


def test_car_detail_hides_other_principals_opportunities(client: TestClient) -> None:
    car = _create_car(client, brand="Jeep", model="Renegade")
    secret = client.post(
        "/api/clients", json={"name": "Secret", "email": "secret@alice.example", "phone": "555"}
    ).json()
    client.post("/api/opportunities", json={"client_id": secret["id"], "car_label": "Renegade", "car_model_id": car["id"]})

    as_alice = client.get(f"/api/cars/{car['id']}").json()
    assert [item["client"]["name"] for item in as_alice["opportunities"]] == ["Secret"]

    app.dependency_overrides[get_optional_user] = lambda: AuthContext(user_id="bob")
    as_bob = client.get(f"/api/cars/{car['id']}")
    assert as_bob.status_code == 200
    assert as_bob.json()["opportunities"] == []
    assert as_bob.json()["opportunities_count"] == 1
    assert "secret@alice.example" not in as_bob.text

    app.dependency_overrides.pop(get_optional_user)
    app.dependency_overrides.pop(get_current_user)
    anonymous = client.get(f"/api/cars/{car['id']}")
    assert anonymous.status_code == 200
    assert anonymous.json()["opportunities"] == []
    assert "Secret" not in anonymous.text

    assert client.delete(f"/api/cars/{car['id']}").status_code == 401
