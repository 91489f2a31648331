from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from showroom.core.database import Base
from showroom.crm.pipeline import Stage, Urgency


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[StrEnum]) -> list[str]:
    return [member.value for member in enum_cls]


class Principal(Base):
    __tablename__ = "principal"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    clients: Mapped[list[Client]] = relationship("Client", back_populates="owner")


class Client(Base):
    __tablename__ = "client"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=Urgency.NORMAL,
    )
    owner_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("principal.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    owner: Mapped[Principal] = relationship("Principal", back_populates="clients")
    opportunities: Mapped[list[Opportunity]] = relationship("Opportunity", back_populates="client")

    __table_args__ = (
        UniqueConstraint("owner_id", "email", name="uq_client_owner_email"),
        Index("ix_client_owner_urgency", "owner_id", "urgency"),
    )


class Car(Base):
    __tablename__ = "car"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str | None] = mapped_column(Text, nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    opportunities: Mapped[list[Opportunity]] = relationship("Opportunity", back_populates="car_model")

    __table_args__ = (
        CheckConstraint("year IS NULL OR (year >= 1900 AND year <= 2100)", name="ck_car_year_range"),
        Index("ix_car_brand_model", "brand", "model"),
    )


# Absent version/year must collide with each other, hence coalesce: NULLs are
# distinct in a plain unique constraint.
Index(
    "uq_car_spec",
    Car.brand,
    Car.model,
    func.coalesce(Car.version, ""),
    func.coalesce(Car.year, 0),
    unique=True,
)


class Opportunity(Base):
    __tablename__ = "opportunity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("client.id", ondelete="RESTRICT"),
        nullable=False,
    )
    car_label: Mapped[str] = mapped_column(Text, nullable=False)
    car_model_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("car.id", ondelete="RESTRICT"),
        nullable=True,
    )
    stage: Mapped[Stage] = mapped_column(
        Enum(Stage, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
        default=Stage.LEAD,
    )
    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=Urgency.NORMAL,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    client: Mapped[Client] = relationship("Client", back_populates="opportunities")
    car_model: Mapped[Car | None] = relationship("Car", back_populates="opportunities")
    notes: Mapped[list[Note]] = relationship(
        "Note",
        back_populates="opportunity",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_opportunity_client", "client_id"),
        Index("ix_opportunity_car_model", "car_model_id"),
    )


class Note(Base):
    __tablename__ = "note"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("opportunity.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    opportunity: Mapped[Opportunity] = relationship("Opportunity", back_populates="notes")

    __table_args__ = (Index("ix_note_opportunity_created", "opportunity_id", "created_at"),)
