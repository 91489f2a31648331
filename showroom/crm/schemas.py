from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from showroom.crm.pipeline import Stage, Urgency


T = TypeVar("T")


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class Page(BaseModel, Generic[T]):
    items: list[T]
    next_cursor: int | None = None


class BulkDeleteResult(BaseModel):
    count: int


# Cars


class CarCreate(BaseModel):
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    version: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)

    @field_validator("version")
    @classmethod
    def normalize_version(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class CarUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    brand: str | None = Field(default=None, min_length=1)
    model: str | None = Field(default=None, min_length=1)
    version: str | None = None
    year: int | None = Field(default=None, ge=1900, le=2100)

    @field_validator("version")
    @classmethod
    def normalize_version(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class CarBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    brand: str
    model: str
    version: str | None
    year: int | None


class CarRead(CarBrief):
    created_at: datetime
    updated_at: datetime
    opportunities_count: int = 0


class CarModelOption(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    model: str
    version: str | None
    year: int | None


class ClientContact(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None
    phone: str | None


class CarOpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    car_label: str
    stage: Stage
    urgency: Urgency
    created_at: datetime
    client: ClientContact


class CarDetail(CarRead):
    opportunities: list[CarOpportunityRead] = Field(default_factory=list)


class BrandCount(BaseModel):
    brand: str
    count: int


class CarUsage(CarBrief):
    opportunities_count: int


class CarStats(BaseModel):
    total_cars: int
    cars_by_brand: list[BrandCount]
    most_used_cars: list[CarUsage]


# Notes


class NoteCreate(BaseModel):
    opportunity_id: int
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class NoteUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    content: str | None = Field(default=None, min_length=1)


class NoteBulkDelete(BaseModel):
    ids: list[int] = Field(min_length=1)


class NoteBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime


class ClientName(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class NoteOpportunitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    car_label: str
    stage: Stage
    urgency: Urgency
    client: ClientName


class NoteRead(NoteBrief):
    opportunity_id: int
    opportunity: NoteOpportunitySummary | None = None


class NoteStats(BaseModel):
    total_notes: int
    notes_today: int
    notes_this_week: int
    notes_this_month: int


# Opportunities


class OpportunityCreate(BaseModel):
    client_id: int
    car_label: str = Field(min_length=1)
    car_model_id: int | None = None
    stage: Stage = Stage.LEAD
    urgency: Urgency = Urgency.NORMAL


class OpportunityUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: int | None = None
    car_label: str | None = Field(default=None, min_length=1)
    car_model_id: int | None = None
    stage: Stage | None = None
    urgency: Urgency | None = None


class OpportunityStageUpdate(BaseModel):
    stage: Stage


class ClientSummary(ClientContact):
    urgency: Urgency


class OpportunityRead(BaseModel):
    """An opportunity with its client, catalogue car and notes.

    List views carry the most recent notes only; ``notes_count`` is always the
    full number of notes attached to the opportunity.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    client_id: int
    car_label: str
    car_model_id: int | None
    stage: Stage
    urgency: Urgency
    created_at: datetime
    updated_at: datetime
    client: ClientSummary
    car_model: CarBrief | None = None
    notes: list[NoteBrief] = Field(default_factory=list)
    notes_count: int = 0


class OpportunityStats(BaseModel):
    total: int
    by_stage: dict[Stage, int]
    by_urgency: dict[Urgency, int]


# Clients


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    urgency: Urgency = Urgency.NORMAL


class ClientUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    urgency: Urgency | None = None


class UrgencyUpdate(BaseModel):
    urgency: Urgency


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None
    phone: str | None
    urgency: Urgency
    owner_id: str
    created_at: datetime
    updated_at: datetime
    opportunities_count: int = 0


class ClientOpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    car_label: str
    car_model_id: int | None
    stage: Stage
    urgency: Urgency
    created_at: datetime
    updated_at: datetime
    car_model: CarBrief | None = None
    notes_count: int = 0


class ClientDetail(ClientRead):
    opportunities: list[ClientOpportunityRead] = Field(default_factory=list)


class UrgentClientRead(ClientRead):
    open_opportunities: list[ClientOpportunityRead] = Field(default_factory=list)


class ClientStats(BaseModel):
    total: int
    by_urgency: dict[Urgency, int]
    with_opportunities: int
    without_opportunities: int
    total_opportunities: int
