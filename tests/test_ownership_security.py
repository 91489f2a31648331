from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import Integer, create_engine, select
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from showroom.core.config import get_settings
from showroom.core.database import Base
from showroom.core.errors import ForbiddenError, NotFoundError
from showroom.crm.models import Car, Client, Note, Opportunity
from showroom.crm.schemas import (
    ClientCreate,
    ClientUpdate,
    NoteCreate,
    NoteUpdate,
    OpportunityCreate,
    OpportunityUpdate,
)
from showroom.crm.service import client_service, note_service, opportunity_service
from showroom.crm.pipeline import Stage, Urgency
from showroom.metrics import tenancy_not_found_total
from showroom.platform.security import apply_ownership_filter, is_owned, ownership_predicate
from showroom.platform.security.context import AuthContext


ALICE = AuthContext(user_id="alice", correlation_id="corr-alice")
BOB = AuthContext(user_id="bob", correlation_id="corr-bob")


class Unregistered(Base):
    __tablename__ = "test_unregistered"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)


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
def alice_graph(db_session: Session) -> dict[str, int]:
    client = client_service.create_client(db_session, ALICE, ClientCreate(name="Alice's client"))
    opportunity = opportunity_service.create_opportunity(
        db_session, ALICE, OpportunityCreate(client_id=client.id, car_label="Renegade")
    )
    note = note_service.create_note(
        db_session, ALICE, NoteCreate(opportunity_id=opportunity.id, title="Visit", content="Saturday")
    )
    return {"client": client.id, "opportunity": opportunity.id, "note": note.id}


def test_predicates_follow_ownership_chain(db_session: Session, alice_graph: dict[str, int]) -> None:
    for model, key in ((Client, "client"), (Opportunity, "opportunity"), (Note, "note")):
        assert is_owned(db_session, model, alice_graph[key], ALICE)
        assert not is_owned(db_session, model, alice_graph[key], BOB)

        visible_to_bob = db_session.scalars(apply_ownership_filter(select(model.id), model, BOB)).all()
        assert visible_to_bob == []


def test_car_catalogue_is_unscoped(db_session: Session) -> None:
    db_session.add(Car(brand="BYD", model="Dolphin"))
    db_session.commit()

    assert len(db_session.scalars(apply_ownership_filter(select(Car), Car, BOB)).all()) == 1


def test_unregistered_entity_fails_loudly() -> None:
    with pytest.raises(LookupError):
        ownership_predicate(Unregistered, ALICE)


def test_every_scoped_operation_hides_foreign_rows(db_session: Session, alice_graph: dict[str, int]) -> None:
    client_id = alice_graph["client"]
    opportunity_id = alice_graph["opportunity"]
    note_id = alice_graph["note"]

    attempts = [
        lambda: client_service.get_client(db_session, BOB, client_id),
        lambda: client_service.update_client(db_session, BOB, client_id, ClientUpdate(name="Mine now")),
        lambda: client_service.update_urgency(db_session, BOB, client_id, Urgency.LOW),
        lambda: client_service.delete_client(db_session, BOB, client_id),
        lambda: opportunity_service.get_opportunity(db_session, BOB, opportunity_id),
        lambda: opportunity_service.list_by_client(db_session, BOB, client_id),
        lambda: opportunity_service.update_opportunity(
            db_session, BOB, opportunity_id, OpportunityUpdate(car_label="Mine")
        ),
        lambda: opportunity_service.update_stage(db_session, BOB, opportunity_id, Stage.CLOSED_LOST),
        lambda: opportunity_service.delete_opportunity(db_session, BOB, opportunity_id),
        lambda: opportunity_service.create_opportunity(
            db_session, BOB, OpportunityCreate(client_id=client_id, car_label="Sneaky")
        ),
        lambda: note_service.get_note(db_session, BOB, note_id),
        lambda: note_service.update_note(db_session, BOB, note_id, NoteUpdate(title="Mine")),
        lambda: note_service.delete_note(db_session, BOB, note_id),
        lambda: note_service.list_by_opportunity(db_session, BOB, opportunity_id),
        lambda: note_service.create_note(
            db_session, BOB, NoteCreate(opportunity_id=opportunity_id, title="x", content="y")
        ),
    ]
    for attempt in attempts:
        with pytest.raises(NotFoundError):
            attempt()

    assert client_service.get_client(db_session, ALICE, client_id).name == "Alice's client"
    assert opportunity_service.get_opportunity(db_session, ALICE, opportunity_id).stage == Stage.LEAD
    assert note_service.get_note(db_session, ALICE, note_id).title == "Visit"


def test_not_found_is_indistinguishable_from_missing(db_session: Session, alice_graph: dict[str, int]) -> None:
    with pytest.raises(NotFoundError) as foreign:
        client_service.get_client(db_session, BOB, alice_graph["client"])
    with pytest.raises(NotFoundError) as missing:
        client_service.get_client(db_session, BOB, 424242)

    assert foreign.value.message == missing.value.message
    assert foreign.value.details == missing.value.details


def test_tenancy_misses_are_counted(db_session: Session, alice_graph: dict[str, int]) -> None:
    counter = tenancy_not_found_total.labels(resource="crm.note")
    before = counter._value.get()

    with pytest.raises(NotFoundError):
        note_service.get_note(db_session, BOB, alice_graph["note"])

    assert counter._value.get() == before + 1


def test_bulk_delete_refuses_partial_ownership(db_session: Session, alice_graph: dict[str, int]) -> None:
    with pytest.raises(ForbiddenError):
        note_service.delete_many(db_session, BOB, [alice_graph["note"]])

    assert note_service.get_note(db_session, ALICE, alice_graph["note"]).id == alice_graph["note"]
    assert note_service.delete_many(db_session, ALICE, [alice_graph["note"]]).count == 1
