from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from showroom.context import get_correlation_id
from showroom.core.auth import AuthUser, get_current_user as get_auth_user
from showroom.core.database import get_db
from showroom.core.errors import ShowroomError
from showroom.crm.pipeline import Stage, Urgency
from showroom.crm.schemas import (
    BulkDeleteResult,
    CarBrief,
    CarCreate,
    CarDetail,
    CarModelOption,
    CarRead,
    CarStats,
    CarUpdate,
    ClientCreate,
    ClientDetail,
    ClientRead,
    ClientStats,
    ClientSummary,
    ClientUpdate,
    NoteBulkDelete,
    NoteCreate,
    NoteRead,
    NoteStats,
    NoteUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStageUpdate,
    OpportunityStats,
    OpportunityUpdate,
    Page,
    UrgencyUpdate,
    UrgentClientRead,
)
from showroom.crm.service import car_service, client_service, note_service, opportunity_service
from showroom.platform.security.context import AuthContext


clients_router = APIRouter(prefix="/api/clients", tags=["crm.clients"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])
notes_router = APIRouter(prefix="/api/notes", tags=["crm.notes"])
cars_router = APIRouter(prefix="/api/cars", tags=["crm.cars"])

DELETED = {"status": "deleted"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("x-correlation-id")
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: ShowroomError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return AuthContext(user_id=auth_user.sub, correlation_id=get_correlation_id(), roles=list(auth_user.roles))


def get_optional_user(auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext | None:
    if auth_user.is_anonymous:
        return None
    return AuthContext(user_id=auth_user.sub, correlation_id=get_correlation_id(), roles=list(auth_user.roles))


# Clients


@clients_router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, user, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.get("", response_model=Page[ClientRead])
def list_clients(
    request: Request,
    cursor: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    urgency: Urgency | None = Query(default=None),
    search_term: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Page[ClientRead] | JSONResponse:
    try:
        return client_service.list_clients(
            db, user, cursor=cursor, limit=limit, urgency=urgency, search_term=search_term
        )
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.get("/stats", response_model=ClientStats)
def client_stats(
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> ClientStats:
    return client_service.stats(db, user)


@clients_router.get("/urgent", response_model=list[UrgentClientRead])
def urgent_clients(
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> list[UrgentClientRead]:
    return client_service.list_urgent(db, user)


@clients_router.get("/search", response_model=list[ClientSummary])
def search_clients(
    request: Request,
    query: str = Query(),
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> list[ClientSummary] | JSONResponse:
    try:
        return client_service.search_clients(db, user, query, limit)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.get("/by-urgency/{urgency}", response_model=list[ClientRead])
def clients_by_urgency(
    urgency: Urgency,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> list[ClientRead]:
    return client_service.list_by_urgency(db, user, urgency)


@clients_router.get("/{client_id}", response_model=ClientDetail)
def get_client(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> ClientDetail | JSONResponse:
    try:
        return client_service.get_client(db, user, client_id)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.get("/{client_id}/opportunities", response_model=list[OpportunityRead])
def client_opportunities(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list_by_client(db, user, client_id)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.patch("/{client_id}", response_model=ClientRead)
def patch_client(
    request: Request,
    client_id: int,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_client(db, user, client_id, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.patch("/{client_id}/urgency", response_model=ClientRead)
def patch_client_urgency(
    request: Request,
    client_id: int,
    dto: UrgencyUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_urgency(db, user, client_id, dto.urgency)
    except ShowroomError as exc:
        return _failed(request, exc)


@clients_router.delete("/{client_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_client(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Any:
    try:
        client_service.delete_client(db, user, client_id)
        return DELETED
    except ShowroomError as exc:
        return _failed(request, exc)


# Opportunities


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, user, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.get("", response_model=Page[OpportunityRead])
def list_opportunities(
    request: Request,
    cursor: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    stage: Stage | None = Query(default=None),
    urgency: Urgency | None = Query(default=None),
    client_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Page[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list_opportunities(
            db, user, cursor=cursor, limit=limit, stage=stage, urgency=urgency, client_id=client_id
        )
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.get("/stats", response_model=OpportunityStats)
def opportunity_stats(
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> OpportunityStats:
    return opportunity_service.stats(db, user)


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.get("/{opportunity_id}/notes", response_model=Page[NoteRead])
def opportunity_notes(
    request: Request,
    opportunity_id: int,
    cursor: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Page[NoteRead] | JSONResponse:
    try:
        return note_service.list_by_opportunity(db, user, opportunity_id, cursor=cursor, limit=limit)
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: int,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.patch("/{opportunity_id}/stage", response_model=OpportunityRead)
def change_stage(
    request: Request,
    opportunity_id: int,
    dto: OpportunityStageUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_stage(db, user, opportunity_id, dto.stage)
    except ShowroomError as exc:
        return _failed(request, exc)


@opportunities_router.delete("/{opportunity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Any:
    try:
        opportunity_service.delete_opportunity(db, user, opportunity_id)
        return DELETED
    except ShowroomError as exc:
        return _failed(request, exc)


# Notes


@notes_router.post("", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    request: Request,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.create_note(db, user, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.get("", response_model=Page[NoteRead])
def list_notes(
    request: Request,
    cursor: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    opportunity_id: int | None = Query(default=None),
    search_term: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Page[NoteRead] | JSONResponse:
    try:
        return note_service.list_notes(
            db, user, cursor=cursor, limit=limit, opportunity_id=opportunity_id, search_term=search_term
        )
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.get("/stats", response_model=NoteStats)
def note_stats(
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> NoteStats:
    return note_service.stats(db, user)


@notes_router.get("/search", response_model=list[NoteRead])
def search_notes(
    request: Request,
    query: str = Query(),
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        return note_service.search_notes(db, user, query, limit)
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.post("/bulk-delete", response_model=BulkDeleteResult)
def bulk_delete_notes(
    request: Request,
    dto: NoteBulkDelete,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> BulkDeleteResult | JSONResponse:
    try:
        return note_service.delete_many(db, user, dto.ids)
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.get("/{note_id}", response_model=NoteRead)
def get_note(
    request: Request,
    note_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.get_note(db, user, note_id)
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.patch("/{note_id}", response_model=NoteRead)
def patch_note(
    request: Request,
    note_id: int,
    dto: NoteUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        return note_service.update_note(db, user, note_id, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@notes_router.delete("/{note_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_note(
    request: Request,
    note_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Any:
    try:
        note_service.delete_note(db, user, note_id)
        return DELETED
    except ShowroomError as exc:
        return _failed(request, exc)


# Cars: the catalogue is shared, reads are public.


@cars_router.post("", response_model=CarRead, status_code=status.HTTP_201_CREATED)
def create_car(
    request: Request,
    dto: CarCreate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> CarRead | JSONResponse:
    try:
        return car_service.create_car(db, user, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@cars_router.get("", response_model=Page[CarRead])
def list_cars(
    request: Request,
    cursor: int | None = Query(default=None),
    limit: int | None = Query(default=None),
    brand: str | None = Query(default=None),
    search_term: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> Page[CarRead] | JSONResponse:
    try:
        return car_service.list_cars(db, cursor=cursor, limit=limit, brand=brand, search_term=search_term)
    except ShowroomError as exc:
        return _failed(request, exc)


@cars_router.get("/stats", response_model=CarStats, dependencies=[Depends(get_current_user)])
def car_stats(db: Session = Depends(get_db)) -> CarStats:
    return car_service.stats(db)


@cars_router.get("/brands", response_model=list[str])
def car_brands(db: Session = Depends(get_db)) -> list[str]:
    return car_service.list_brands(db)


@cars_router.get("/by-brand", response_model=list[CarRead])
def cars_by_brand(brand: str = Query(min_length=1), db: Session = Depends(get_db)) -> list[CarRead]:
    return car_service.list_by_brand(db, brand)


@cars_router.get("/models", response_model=list[CarModelOption])
def car_models(brand: str = Query(), db: Session = Depends(get_db)) -> list[CarModelOption]:
    return car_service.list_models_by_brand(db, brand)


@cars_router.get("/search", response_model=list[CarBrief])
def search_cars(
    request: Request,
    query: str = Query(),
    limit: int | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[CarBrief] | JSONResponse:
    try:
        return car_service.search_cars(db, query, limit)
    except ShowroomError as exc:
        return _failed(request, exc)


@cars_router.get("/{car_id}", response_model=CarDetail)
def get_car(
    request: Request,
    car_id: int,
    db: Session = Depends(get_db),
    user: AuthContext | None = Depends(get_optional_user),
) -> CarDetail | JSONResponse:
    try:
        return car_service.get_car(db, car_id, user)
    except ShowroomError as exc:
        return _failed(request, exc)


@cars_router.patch("/{car_id}", response_model=CarRead)
def patch_car(
    request: Request,
    car_id: int,
    dto: CarUpdate,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> CarRead | JSONResponse:
    try:
        return car_service.update_car(db, user, car_id, dto)
    except ShowroomError as exc:
        return _failed(request, exc)


@cars_router.delete("/{car_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_car(
    request: Request,
    car_id: int,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
) -> Any:
    try:
        car_service.delete_car(db, user, car_id)
        return DELETED
    except ShowroomError as exc:
        return _failed(request, exc)
