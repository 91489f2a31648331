from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from showroom import audit
from showroom.core.database import transaction_scope
from showroom.core.errors import ConflictError, ForbiddenError, InvalidInputError
from showroom.crm.models import Car, Client, Note, Opportunity
from showroom.core.config import get_settings
from showroom.crm.pagination import SortKey, paginate, resolve_limit
from showroom.crm.pipeline import (
    OPEN_STAGES,
    Stage,
    Urgency,
    tally_clients,
    tally_opportunities,
    urgency_rank_expr,
)
from showroom.crm.repositories import (
    CarRepository,
    ClientRepository,
    NoteRepository,
    OpportunityRepository,
    PrincipalRepository,
)
from showroom.crm.schemas import (
    BrandCount,
    BulkDeleteResult,
    CarBrief,
    CarCreate,
    CarDetail,
    CarModelOption,
    CarOpportunityRead,
    CarRead,
    CarStats,
    CarUpdate,
    CarUsage,
    ClientCreate,
    ClientDetail,
    ClientOpportunityRead,
    ClientRead,
    ClientStats,
    ClientSummary,
    ClientUpdate,
    NoteBrief,
    NoteCreate,
    NoteRead,
    NoteStats,
    NoteUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStats,
    OpportunityUpdate,
    Page,
    UrgentClientRead,
)
from showroom.metrics import observe_integrity_conflict
from showroom.otel import get_tracer
from showroom.platform.security.context import AuthContext


logger = logging.getLogger("showroom.crm")
tracer = get_tracer("showroom.crm")

CLIENT_SORT = (SortKey(urgency_rank_expr(Client.urgency), descending=True), SortKey(Client.created_at, descending=True))
OPPORTUNITY_SORT = (
    SortKey(urgency_rank_expr(Opportunity.urgency), descending=True),
    SortKey(Opportunity.updated_at, descending=True),
)
NOTE_SORT = (SortKey(Note.created_at, descending=True),)
CAR_SORT = (SortKey(Car.brand), SortKey(Car.model), SortKey(func.coalesce(Car.year, 0), descending=True))

NOTE_PAGE_SIZE = 20
RECENT_NOTES_PER_OPPORTUNITY = 3
URGENT_OPEN_OPPORTUNITIES = 3
CLIENT_SEARCH_MAX = 20
NOTE_SEARCH_MAX = 50
CAR_SEARCH_MAX = 20
CAR_STATS_TOP = 10


@contextmanager
def unit_of_work(session: Session, *, resource: str, conflict_message: str) -> Iterator[Session]:
    """Transaction whose constraint violations surface as :class:`ConflictError`.

    Read-then-write uniqueness checks run before this block; the database
    constraints catch whatever slips between the check and the commit.
    """

    try:
        with transaction_scope(session):
            yield session
    except IntegrityError as exc:
        observe_integrity_conflict(resource, "constraint")
        logger.warning("integrity.constraint_violation", extra={"entity_type": resource, "error": str(exc.orig)})
        raise ConflictError(conflict_message) from exc


def _required_text(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise InvalidInputError(f"{field} is required")
    return value.strip()


def _reject_null(payload: dict[str, Any], *fields: str) -> None:
    for field in fields:
        if field in payload and payload[field] is None:
            raise InvalidInputError(f"{field} cannot be null")


def _contains(term: str) -> str:
    return f"%{term}%"


def _count_by(session: Session, column: Any, ids: Sequence[int]) -> dict[int, int]:
    if not ids:
        return {}
    rows = session.execute(select(column, func.count()).where(column.in_(ids)).group_by(column)).all()
    return {row[0]: row[1] for row in rows}


def _car_brief(car: Car | None) -> CarBrief | None:
    return CarBrief.model_validate(car) if car is not None else None


class ClientService:
    entity_type = "crm.client"

    def __init__(self) -> None:
        self.repository = ClientRepository()
        self.principals = PrincipalRepository()

    def create_client(self, session: Session, ctx: AuthContext, dto: ClientCreate) -> ClientRead:
        name = _required_text(dto.name, "name")
        if dto.email is not None:
            self._ensure_email_available(session, ctx, dto.email)

        with unit_of_work(session, resource=self.entity_type, conflict_message="a client with this email already exists"):
            self.principals.ensure(session, ctx.user_id)
            client = Client(
                name=name,
                email=dto.email,
                phone=dto.phone,
                urgency=dto.urgency,
                owner_id=ctx.user_id,
            )
            session.add(client)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="create",
            before=None,
            after=self._snapshot(client),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.client.created", extra={"entity_id": client.id, "principal_id": ctx.user_id})
        return self._to_read(client, opportunities_count=0)

    def list_clients(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        urgency: Urgency | None = None,
        search_term: str | None = None,
    ) -> Page[ClientRead]:
        stmt = self.repository.scoped_select(ctx)
        if urgency is not None:
            stmt = stmt.where(Client.urgency == urgency)
        if search_term:
            pattern = _contains(search_term)
            stmt = stmt.where(
                or_(Client.name.ilike(pattern), Client.email.ilike(pattern), Client.phone.ilike(pattern))
            )

        page = paginate(session, stmt, id_column=Client.id, sort_keys=CLIENT_SORT, cursor=cursor, limit=limit)
        counts = _count_by(session, Opportunity.client_id, [client.id for client in page.items])
        return Page[ClientRead](
            items=[self._to_read(client, opportunities_count=counts.get(client.id, 0)) for client in page.items],
            next_cursor=page.next_cursor,
        )

    def get_client(self, session: Session, ctx: AuthContext, client_id: int) -> ClientDetail:
        client = self.repository.get_visible(session, ctx, client_id)
        opportunities = session.scalars(
            select(Opportunity)
            .where(Opportunity.client_id == client.id)
            .options(selectinload(Opportunity.car_model))
            .order_by(Opportunity.updated_at.desc(), Opportunity.id.asc())
        ).all()
        return ClientDetail.model_validate(
            {
                **self._to_read(client, opportunities_count=len(opportunities)).model_dump(),
                "opportunities": self._opportunity_rows(session, opportunities),
            }
        )

    def list_by_urgency(self, session: Session, ctx: AuthContext, urgency: Urgency) -> list[ClientRead]:
        clients = session.scalars(
            self.repository.scoped_select(ctx)
            .where(Client.urgency == urgency)
            .order_by(Client.created_at.desc(), Client.id.asc())
        ).all()
        counts = _count_by(session, Opportunity.client_id, [client.id for client in clients])
        return [self._to_read(client, opportunities_count=counts.get(client.id, 0)) for client in clients]

    def list_urgent(self, session: Session, ctx: AuthContext) -> list[UrgentClientRead]:
        """High-urgency clients, least recently touched first, with a few open deals each."""

        clients = session.scalars(
            self.repository.scoped_select(ctx)
            .where(Client.urgency == Urgency.HIGH)
            .order_by(Client.updated_at.asc(), Client.id.asc())
        ).all()
        counts = _count_by(session, Opportunity.client_id, [client.id for client in clients])

        results: list[UrgentClientRead] = []
        for client in clients:
            open_opportunities = session.scalars(
                select(Opportunity)
                .where(Opportunity.client_id == client.id, Opportunity.stage.in_(OPEN_STAGES))
                .options(selectinload(Opportunity.car_model))
                .order_by(Opportunity.updated_at.desc(), Opportunity.id.asc())
                .limit(URGENT_OPEN_OPPORTUNITIES)
            ).all()
            results.append(
                UrgentClientRead.model_validate(
                    {
                        **self._to_read(client, opportunities_count=counts.get(client.id, 0)).model_dump(),
                        "open_opportunities": self._opportunity_rows(session, open_opportunities),
                    }
                )
            )
        return results

    def search_clients(
        self, session: Session, ctx: AuthContext, query: str, limit: int | None = None
    ) -> list[ClientSummary]:
        term = _required_text(query, "query")
        limit = resolve_limit(limit, default=get_settings().search_limit_default, maximum=CLIENT_SEARCH_MAX)
        pattern = _contains(term)
        clients = session.scalars(
            self.repository.scoped_select(ctx)
            .where(or_(Client.name.ilike(pattern), Client.email.ilike(pattern), Client.phone.ilike(pattern)))
            .order_by(Client.name.asc(), Client.id.asc())
            .limit(limit)
        ).all()
        return [ClientSummary.model_validate(client) for client in clients]

    def update_client(self, session: Session, ctx: AuthContext, client_id: int, dto: ClientUpdate) -> ClientRead:
        client = self.repository.get_visible(session, ctx, client_id)
        payload = dto.model_dump(exclude_unset=True)
        _reject_null(payload, "name", "urgency")
        if "name" in payload:
            payload["name"] = _required_text(payload["name"], "name")
        if payload.get("email") is not None and payload["email"] != client.email:
            self._ensure_email_available(session, ctx, payload["email"], exclude_id=client.id)

        before = self._snapshot(client)
        with unit_of_work(session, resource=self.entity_type, conflict_message="a client with this email already exists"):
            for key, value in payload.items():
                setattr(client, key, value)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="update",
            before=before,
            after=self._snapshot(client),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.client.updated", extra={"entity_id": client.id, "principal_id": ctx.user_id})
        counts = _count_by(session, Opportunity.client_id, [client.id])
        return self._to_read(client, opportunities_count=counts.get(client.id, 0))

    def update_urgency(self, session: Session, ctx: AuthContext, client_id: int, urgency: Urgency) -> ClientRead:
        return self.update_client(session, ctx, client_id, ClientUpdate(urgency=urgency))

    def delete_client(self, session: Session, ctx: AuthContext, client_id: int) -> None:
        client = self.repository.get_visible(session, ctx, client_id)
        linked = session.scalar(select(func.count()).where(Opportunity.client_id == client.id)) or 0
        if linked > 0:
            observe_integrity_conflict(self.entity_type, "dependent_rows")
            raise ConflictError(
                f"cannot delete client: {linked} opportunities linked",
                details={"opportunities": linked},
            )

        before = self._snapshot(client)
        with unit_of_work(session, resource=self.entity_type, conflict_message="client still has linked opportunities"):
            session.delete(client)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(client_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.client.deleted", extra={"entity_id": client_id, "principal_id": ctx.user_id})

    def stats(self, session: Session, ctx: AuthContext) -> ClientStats:
        stmt = (
            select(Client.urgency, func.count(Opportunity.id))
            .select_from(Client)
            .outerjoin(Opportunity, Opportunity.client_id == Client.id)
            .group_by(Client.id, Client.urgency)
        )
        rows = session.execute(self.repository.apply_scope_query(stmt, ctx)).all()
        return ClientStats.model_validate(tally_clients((row[0], row[1]) for row in rows))

    def _ensure_email_available(
        self, session: Session, ctx: AuthContext, email: str, *, exclude_id: int | None = None
    ) -> None:
        stmt = self.repository.scoped_select(ctx).where(Client.email == email)
        if exclude_id is not None:
            stmt = stmt.where(Client.id != exclude_id)
        if session.scalar(select(stmt.exists())):
            observe_integrity_conflict(self.entity_type, "duplicate_email")
            raise ConflictError("a client with this email already exists")

    def _opportunity_rows(self, session: Session, opportunities: Sequence[Opportunity]) -> list[ClientOpportunityRead]:
        note_counts = _count_by(session, Note.opportunity_id, [item.id for item in opportunities])
        return [
            ClientOpportunityRead.model_validate(
                {
                    "id": item.id,
                    "car_label": item.car_label,
                    "car_model_id": item.car_model_id,
                    "stage": item.stage,
                    "urgency": item.urgency,
                    "created_at": item.created_at,
                    "updated_at": item.updated_at,
                    "car_model": _car_brief(item.car_model),
                    "notes_count": note_counts.get(item.id, 0),
                }
            )
            for item in opportunities
        ]

    def _snapshot(self, client: Client) -> dict[str, Any]:
        return {
            "name": client.name,
            "email": client.email,
            "phone": client.phone,
            "urgency": str(client.urgency),
            "owner_id": client.owner_id,
        }

    def _to_read(self, client: Client, *, opportunities_count: int) -> ClientRead:
        return ClientRead.model_validate(
            {
                "id": client.id,
                "name": client.name,
                "email": client.email,
                "phone": client.phone,
                "urgency": client.urgency,
                "owner_id": client.owner_id,
                "created_at": client.created_at,
                "updated_at": client.updated_at,
                "opportunities_count": opportunities_count,
            }
        )


class OpportunityService:
    entity_type = "crm.opportunity"

    def __init__(self) -> None:
        self.repository = OpportunityRepository()
        self.clients = ClientRepository()
        self.cars = CarRepository()

    def create_opportunity(self, session: Session, ctx: AuthContext, dto: OpportunityCreate) -> OpportunityRead:
        car_label = _required_text(dto.car_label, "car_label")
        self.clients.ensure_visible(session, ctx, dto.client_id)
        if dto.car_model_id is not None:
            self.cars.get(session, dto.car_model_id)

        with unit_of_work(session, resource=self.entity_type, conflict_message="opportunity references missing data"):
            opportunity = Opportunity(
                client_id=dto.client_id,
                car_label=car_label,
                car_model_id=dto.car_model_id,
                stage=dto.stage,
                urgency=dto.urgency,
            )
            session.add(opportunity)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="create",
            before=None,
            after=self._snapshot(opportunity),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.opportunity.created", extra={"entity_id": opportunity.id, "principal_id": ctx.user_id})
        return self._to_read(opportunity, notes=[], notes_count=0)

    def list_opportunities(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        stage: Stage | None = None,
        urgency: Urgency | None = None,
        client_id: int | None = None,
    ) -> Page[OpportunityRead]:
        stmt = self.repository.scoped_select(ctx)
        if stage is not None:
            stmt = stmt.where(Opportunity.stage == stage)
        if urgency is not None:
            stmt = stmt.where(Opportunity.urgency == urgency)
        if client_id is not None:
            stmt = stmt.where(Opportunity.client_id == client_id)

        page = paginate(
            session,
            stmt,
            id_column=Opportunity.id,
            sort_keys=OPPORTUNITY_SORT,
            cursor=cursor,
            limit=limit,
            options=(selectinload(Opportunity.client), selectinload(Opportunity.car_model)),
        )
        return Page[OpportunityRead](items=self._list_rows(session, page.items), next_cursor=page.next_cursor)

    def list_by_client(self, session: Session, ctx: AuthContext, client_id: int) -> list[OpportunityRead]:
        self.clients.ensure_visible(session, ctx, client_id)
        opportunities = session.scalars(
            self.repository.scoped_select(ctx)
            .where(Opportunity.client_id == client_id)
            .options(selectinload(Opportunity.client), selectinload(Opportunity.car_model))
            .order_by(Opportunity.updated_at.desc(), Opportunity.id.asc())
        ).all()
        return self._list_rows(session, opportunities)

    def get_opportunity(self, session: Session, ctx: AuthContext, opportunity_id: int) -> OpportunityRead:
        opportunity = self.repository.get_visible(session, ctx, opportunity_id)
        notes = self._notes(session, opportunity.id)
        return self._to_read(opportunity, notes=notes, notes_count=len(notes))

    def update_opportunity(
        self, session: Session, ctx: AuthContext, opportunity_id: int, dto: OpportunityUpdate
    ) -> OpportunityRead:
        opportunity = self.repository.get_visible(session, ctx, opportunity_id)
        payload = dto.model_dump(exclude_unset=True)
        _reject_null(payload, "client_id", "car_label", "stage", "urgency")
        if "car_label" in payload:
            payload["car_label"] = _required_text(payload["car_label"], "car_label")
        if "client_id" in payload and payload["client_id"] != opportunity.client_id:
            self.clients.ensure_visible(session, ctx, payload["client_id"])
        if payload.get("car_model_id") is not None:
            self.cars.get(session, payload["car_model_id"])

        before = self._snapshot(opportunity)
        with unit_of_work(session, resource=self.entity_type, conflict_message="opportunity references missing data"):
            for key, value in payload.items():
                setattr(opportunity, key, value)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="update",
            before=before,
            after=self._snapshot(opportunity),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.opportunity.updated", extra={"entity_id": opportunity.id, "principal_id": ctx.user_id})
        return self._read_with_recent_notes(session, opportunity)

    def update_stage(self, session: Session, ctx: AuthContext, opportunity_id: int, stage: Stage) -> OpportunityRead:
        opportunity = self.repository.get_visible(session, ctx, opportunity_id)
        previous = opportunity.stage
        with unit_of_work(session, resource=self.entity_type, conflict_message="opportunity stage update failed"):
            opportunity.stage = stage
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity.id),
            action="stage_change",
            before={"stage": str(previous)},
            after={"stage": str(stage)},
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            "crm.opportunity.stage_changed",
            extra={"entity_id": opportunity.id, "principal_id": ctx.user_id, "reason": f"{previous}->{stage}"},
        )
        return self._read_with_recent_notes(session, opportunity)

    def delete_opportunity(self, session: Session, ctx: AuthContext, opportunity_id: int) -> None:
        """Delete an opportunity together with all of its notes, atomically."""

        opportunity = self.repository.get_visible(session, ctx, opportunity_id)
        before = self._snapshot(opportunity)
        with tracer.start_as_current_span("crm.opportunity.delete") as span:
            span.set_attribute("crm.opportunity_id", opportunity_id)
            with unit_of_work(session, resource=self.entity_type, conflict_message="opportunity could not be deleted"):
                notes_deleted = session.execute(delete(Note).where(Note.opportunity_id == opportunity_id)).rowcount
                session.execute(delete(Opportunity).where(Opportunity.id == opportunity_id))
            span.set_attribute("crm.notes_deleted", notes_deleted)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(opportunity_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            "crm.opportunity.deleted",
            extra={"entity_id": opportunity_id, "principal_id": ctx.user_id, "count": notes_deleted},
        )

    def stats(self, session: Session, ctx: AuthContext) -> OpportunityStats:
        stmt = self.repository.apply_scope_query(select(Opportunity.stage, Opportunity.urgency), ctx)
        rows = session.execute(stmt).all()
        return OpportunityStats.model_validate(tally_opportunities((row[0], row[1]) for row in rows))

    def _notes(self, session: Session, opportunity_id: int, limit: int | None = None) -> list[Note]:
        stmt = (
            select(Note)
            .where(Note.opportunity_id == opportunity_id)
            .order_by(Note.created_at.desc(), Note.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    def _list_rows(self, session: Session, opportunities: Sequence[Opportunity]) -> list[OpportunityRead]:
        counts = _count_by(session, Note.opportunity_id, [item.id for item in opportunities])
        return [
            self._to_read(
                item,
                notes=self._notes(session, item.id, RECENT_NOTES_PER_OPPORTUNITY),
                notes_count=counts.get(item.id, 0),
            )
            for item in opportunities
        ]

    def _read_with_recent_notes(self, session: Session, opportunity: Opportunity) -> OpportunityRead:
        return self._list_rows(session, [opportunity])[0]

    def _snapshot(self, opportunity: Opportunity) -> dict[str, Any]:
        return {
            "client_id": opportunity.client_id,
            "car_label": opportunity.car_label,
            "car_model_id": opportunity.car_model_id,
            "stage": str(opportunity.stage),
            "urgency": str(opportunity.urgency),
        }

    def _to_read(
        self, opportunity: Opportunity, *, notes: Sequence[Note], notes_count: int
    ) -> OpportunityRead:
        return OpportunityRead.model_validate(
            {
                "id": opportunity.id,
                "client_id": opportunity.client_id,
                "car_label": opportunity.car_label,
                "car_model_id": opportunity.car_model_id,
                "stage": opportunity.stage,
                "urgency": opportunity.urgency,
                "created_at": opportunity.created_at,
                "updated_at": opportunity.updated_at,
                "client": ClientSummary.model_validate(opportunity.client),
                "car_model": _car_brief(opportunity.car_model),
                "notes": [NoteBrief.model_validate(note) for note in notes],
                "notes_count": notes_count,
            }
        )


class NoteService:
    entity_type = "crm.note"

    def __init__(self) -> None:
        self.repository = NoteRepository()
        self.opportunities = OpportunityRepository()

    def create_note(self, session: Session, ctx: AuthContext, dto: NoteCreate) -> NoteRead:
        title = _required_text(dto.title, "title")
        content = _required_text(dto.content, "content")
        self.opportunities.ensure_visible(session, ctx, dto.opportunity_id)

        with unit_of_work(session, resource=self.entity_type, conflict_message="note references missing data"):
            note = Note(opportunity_id=dto.opportunity_id, title=title, content=content)
            session.add(note)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(note.id),
            action="create",
            before=None,
            after=self._snapshot(note),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.note.created", extra={"entity_id": note.id, "principal_id": ctx.user_id})
        return NoteRead.model_validate(note)

    def list_by_opportunity(
        self,
        session: Session,
        ctx: AuthContext,
        opportunity_id: int,
        *,
        cursor: int | None = None,
        limit: int | None = None,
    ) -> Page[NoteRead]:
        self.opportunities.ensure_visible(session, ctx, opportunity_id)
        stmt = self.repository.scoped_select(ctx).where(Note.opportunity_id == opportunity_id)
        return self._page(session, stmt, cursor=cursor, limit=limit)

    def list_notes(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        opportunity_id: int | None = None,
        search_term: str | None = None,
    ) -> Page[NoteRead]:
        stmt = self.repository.scoped_select(ctx)
        if opportunity_id is not None:
            stmt = stmt.where(Note.opportunity_id == opportunity_id)
        if search_term:
            pattern = _contains(search_term)
            stmt = stmt.where(or_(Note.title.ilike(pattern), Note.content.ilike(pattern)))
        return self._page(session, stmt, cursor=cursor, limit=resolve_limit(limit, default=NOTE_PAGE_SIZE))

    def get_note(self, session: Session, ctx: AuthContext, note_id: int) -> NoteRead:
        return NoteRead.model_validate(self.repository.get_visible(session, ctx, note_id))

    def search_notes(self, session: Session, ctx: AuthContext, query: str, limit: int | None = None) -> list[NoteRead]:
        term = _required_text(query, "query")
        limit = resolve_limit(limit, default=NOTE_PAGE_SIZE, maximum=NOTE_SEARCH_MAX)
        pattern = _contains(term)
        notes = session.scalars(
            self.repository.scoped_select(ctx)
            .where(or_(Note.title.ilike(pattern), Note.content.ilike(pattern)))
            .options(selectinload(Note.opportunity).selectinload(Opportunity.client))
            .order_by(Note.updated_at.desc(), Note.id.asc())
            .limit(limit)
        ).all()
        return [NoteRead.model_validate(note) for note in notes]

    def update_note(self, session: Session, ctx: AuthContext, note_id: int, dto: NoteUpdate) -> NoteRead:
        note = self.repository.get_visible(session, ctx, note_id)
        payload = dto.model_dump(exclude_unset=True)
        for field in ("title", "content"):
            if field in payload:
                payload[field] = _required_text(payload[field], field)

        before = self._snapshot(note)
        with unit_of_work(session, resource=self.entity_type, conflict_message="note update failed"):
            for key, value in payload.items():
                setattr(note, key, value)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(note.id),
            action="update",
            before=before,
            after=self._snapshot(note),
            correlation_id=ctx.correlation_id,
        )
        return NoteRead.model_validate(note)

    def delete_note(self, session: Session, ctx: AuthContext, note_id: int) -> None:
        note = self.repository.get_visible(session, ctx, note_id)
        before = self._snapshot(note)
        with unit_of_work(session, resource=self.entity_type, conflict_message="note could not be deleted"):
            session.delete(note)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(note_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.note.deleted", extra={"entity_id": note_id, "principal_id": ctx.user_id})

    def delete_many(self, session: Session, ctx: AuthContext, ids: Sequence[int]) -> BulkDeleteResult:
        """Delete every listed note, or none of them.

        Duplicate ids count once. If any id is missing or owned by someone
        else the whole request is refused and nothing is deleted.
        """

        requested = list(dict.fromkeys(ids))
        if not requested:
            raise InvalidInputError("ids must not be empty")

        owned = list(
            session.scalars(
                self.repository.apply_scope_query(select(Note.id), ctx).where(Note.id.in_(requested))
            ).all()
        )
        if len(owned) != len(requested):
            logger.warning(
                "crm.note.bulk_delete_refused",
                extra={"principal_id": ctx.user_id, "count": len(requested) - len(owned)},
            )
            raise ForbiddenError("some notes were not found or are not accessible")

        with tracer.start_as_current_span("crm.note.delete_many") as span:
            span.set_attribute("crm.notes_requested", len(requested))
            with unit_of_work(session, resource=self.entity_type, conflict_message="notes could not be deleted"):
                count = session.execute(delete(Note).where(Note.id.in_(owned))).rowcount
            span.set_attribute("crm.notes_deleted", count)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=",".join(str(note_id) for note_id in owned),
            action="bulk_delete",
            before={"ids": owned},
            after=None,
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.note.bulk_deleted", extra={"principal_id": ctx.user_id, "count": count})
        return BulkDeleteResult(count=count)

    def stats(self, session: Session, ctx: AuthContext, *, now: datetime | None = None) -> NoteStats:
        current = now or datetime.now(timezone.utc)
        start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_month = start_of_day.replace(day=1)
        week_ago = current - timedelta(days=7)

        base = self.repository.apply_scope_query(select(func.count(Note.id)), ctx)
        return NoteStats(
            total_notes=session.scalar(base) or 0,
            notes_today=session.scalar(base.where(Note.created_at >= start_of_day)) or 0,
            notes_this_week=session.scalar(base.where(Note.created_at >= week_ago)) or 0,
            notes_this_month=session.scalar(base.where(Note.created_at >= start_of_month)) or 0,
        )

    def _page(self, session: Session, stmt: Any, *, cursor: int | None, limit: int | None) -> Page[NoteRead]:
        page = paginate(
            session,
            stmt,
            id_column=Note.id,
            sort_keys=NOTE_SORT,
            cursor=cursor,
            limit=limit,
            options=(selectinload(Note.opportunity).selectinload(Opportunity.client),),
        )
        return Page[NoteRead](
            items=[NoteRead.model_validate(note) for note in page.items],
            next_cursor=page.next_cursor,
        )

    def _snapshot(self, note: Note) -> dict[str, Any]:
        return {"opportunity_id": note.opportunity_id, "title": note.title, "content": note.content}


class CarService:
    entity_type = "crm.car"

    def __init__(self) -> None:
        self.repository = CarRepository()
        self.opportunities = OpportunityRepository()

    def create_car(self, session: Session, ctx: AuthContext, dto: CarCreate) -> CarRead:
        brand = _required_text(dto.brand, "brand")
        model = _required_text(dto.model, "model")
        self._ensure_unique_car(session, brand, model, dto.version, dto.year)

        with unit_of_work(session, resource=self.entity_type, conflict_message="this car model is already registered"):
            car = Car(brand=brand, model=model, version=dto.version, year=dto.year)
            session.add(car)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(car.id),
            action="create",
            before=None,
            after=self._snapshot(car),
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.car.created", extra={"entity_id": car.id, "principal_id": ctx.user_id})
        return self._to_read(car, opportunities_count=0)

    def list_cars(
        self,
        session: Session,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        brand: str | None = None,
        search_term: str | None = None,
    ) -> Page[CarRead]:
        stmt = select(Car)
        if brand:
            stmt = stmt.where(Car.brand == brand)
        if search_term:
            pattern = _contains(search_term)
            stmt = stmt.where(or_(Car.brand.ilike(pattern), Car.model.ilike(pattern), Car.version.ilike(pattern)))

        page = paginate(session, stmt, id_column=Car.id, sort_keys=CAR_SORT, cursor=cursor, limit=limit)
        counts = _count_by(session, Opportunity.car_model_id, [car.id for car in page.items])
        return Page[CarRead](
            items=[self._to_read(car, opportunities_count=counts.get(car.id, 0)) for car in page.items],
            next_cursor=page.next_cursor,
        )

    def get_car(self, session: Session, car_id: int, ctx: AuthContext | None = None) -> CarDetail:
        """A catalogue car with the caller's own opportunities on it.

        ``opportunities_count`` counts every linked opportunity, whoever owns it;
        the listed opportunities are scoped to ``ctx`` and empty for anonymous callers.
        """

        car = self.repository.get(session, car_id)
        linked = _count_by(session, Opportunity.car_model_id, [car.id]).get(car.id, 0)
        opportunities: Sequence[Opportunity] = []
        if ctx is not None:
            opportunities = session.scalars(
                self.opportunities.scoped_select(ctx)
                .where(Opportunity.car_model_id == car.id)
                .options(selectinload(Opportunity.client))
                .order_by(Opportunity.created_at.desc(), Opportunity.id.asc())
            ).all()
        return CarDetail.model_validate(
            {
                **self._to_read(car, opportunities_count=linked).model_dump(),
                "opportunities": [CarOpportunityRead.model_validate(item) for item in opportunities],
            }
        )

    def list_by_brand(self, session: Session, brand: str) -> list[CarRead]:
        cars = session.scalars(
            select(Car)
            .where(Car.brand.ilike(_contains(brand)))
            .order_by(Car.model.asc(), func.coalesce(Car.year, 0).desc(), Car.id.asc())
        ).all()
        counts = _count_by(session, Opportunity.car_model_id, [car.id for car in cars])
        return [self._to_read(car, opportunities_count=counts.get(car.id, 0)) for car in cars]

    def list_brands(self, session: Session) -> list[str]:
        return list(session.scalars(select(Car.brand).distinct().order_by(Car.brand.asc())).all())

    def list_models_by_brand(self, session: Session, brand: str) -> list[CarModelOption]:
        cars = session.scalars(
            select(Car)
            .where(Car.brand == brand)
            .order_by(Car.model.asc(), func.coalesce(Car.year, 0).desc(), Car.id.asc())
        ).all()
        return [CarModelOption.model_validate(car) for car in cars]

    def search_cars(self, session: Session, query: str, limit: int | None = None) -> list[CarBrief]:
        term = _required_text(query, "query")
        limit = resolve_limit(limit, default=get_settings().search_limit_default, maximum=CAR_SEARCH_MAX)
        pattern = _contains(term)
        cars = session.scalars(
            select(Car)
            .where(or_(Car.brand.ilike(pattern), Car.model.ilike(pattern), Car.version.ilike(pattern)))
            .order_by(Car.brand.asc(), Car.model.asc(), Car.id.asc())
            .limit(limit)
        ).all()
        return [CarBrief.model_validate(car) for car in cars]

    def update_car(self, session: Session, ctx: AuthContext, car_id: int, dto: CarUpdate) -> CarRead:
        car = self.repository.get(session, car_id)
        payload = dto.model_dump(exclude_unset=True)
        _reject_null(payload, "brand", "model")
        for field in ("brand", "model"):
            if field in payload:
                payload[field] = _required_text(payload[field], field)

        if payload.keys() & {"brand", "model", "version", "year"}:
            self._ensure_unique_car(
                session,
                payload.get("brand", car.brand),
                payload.get("model", car.model),
                payload["version"] if "version" in payload else car.version,
                payload["year"] if "year" in payload else car.year,
                exclude_id=car.id,
            )

        before = self._snapshot(car)
        with unit_of_work(session, resource=self.entity_type, conflict_message="this car model is already registered"):
            for key, value in payload.items():
                setattr(car, key, value)
            session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(car.id),
            action="update",
            before=before,
            after=self._snapshot(car),
            correlation_id=ctx.correlation_id,
        )
        counts = _count_by(session, Opportunity.car_model_id, [car.id])
        return self._to_read(car, opportunities_count=counts.get(car.id, 0))

    def delete_car(self, session: Session, ctx: AuthContext, car_id: int) -> None:
        car = self.repository.get(session, car_id)
        linked = session.scalar(select(func.count()).where(Opportunity.car_model_id == car.id)) or 0
        if linked > 0:
            observe_integrity_conflict(self.entity_type, "dependent_rows")
            raise ConflictError(
                f"cannot delete car: {linked} opportunities linked",
                details={"opportunities": linked},
            )

        before = self._snapshot(car)
        with unit_of_work(session, resource=self.entity_type, conflict_message="car still has linked opportunities"):
            session.delete(car)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(car_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.car.deleted", extra={"entity_id": car_id, "principal_id": ctx.user_id})

    def stats(self, session: Session) -> CarStats:
        total = session.scalar(select(func.count(Car.id))) or 0

        brand_count = func.count(Car.id).label("count")
        by_brand = session.execute(
            select(Car.brand, brand_count)
            .group_by(Car.brand)
            .order_by(brand_count.desc(), Car.brand.asc())
            .limit(CAR_STATS_TOP)
        ).all()

        usage = func.count(Opportunity.id).label("opportunities_count")
        most_used = session.execute(
            select(Car, usage)
            .outerjoin(Opportunity, Opportunity.car_model_id == Car.id)
            .group_by(Car.id)
            .order_by(usage.desc(), Car.id.asc())
            .limit(CAR_STATS_TOP)
        ).all()

        return CarStats(
            total_cars=total,
            cars_by_brand=[BrandCount(brand=row[0], count=row[1]) for row in by_brand],
            most_used_cars=[
                CarUsage.model_validate(
                    {
                        "id": car.id,
                        "brand": car.brand,
                        "model": car.model,
                        "version": car.version,
                        "year": car.year,
                        "opportunities_count": count,
                    }
                )
                for car, count in most_used
            ],
        )

    def _ensure_unique_car(
        self,
        session: Session,
        brand: str,
        model: str,
        version: str | None,
        year: int | None,
        *,
        exclude_id: int | None = None,
    ) -> None:
        stmt = select(Car.id).where(
            Car.brand == brand,
            Car.model == model,
            Car.version.is_(None) if version is None else Car.version == version,
            Car.year.is_(None) if year is None else Car.year == year,
        )
        if exclude_id is not None:
            stmt = stmt.where(Car.id != exclude_id)
        if session.scalar(select(stmt.exists())):
            observe_integrity_conflict(self.entity_type, "duplicate_car")
            raise ConflictError("this car model is already registered")

    def _snapshot(self, car: Car) -> dict[str, Any]:
        return {"brand": car.brand, "model": car.model, "version": car.version, "year": car.year}

    def _to_read(self, car: Car, *, opportunities_count: int) -> CarRead:
        return CarRead.model_validate(
            {
                "id": car.id,
                "brand": car.brand,
                "model": car.model,
                "version": car.version,
                "year": car.year,
                "created_at": car.created_at,
                "updated_at": car.updated_at,
                "opportunities_count": opportunities_count,
            }
        )


client_service = ClientService()
opportunity_service = OpportunityService()
note_service = NoteService()
car_service = CarService()
