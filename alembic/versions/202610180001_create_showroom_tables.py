"""create showroom tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

URGENCY_VALUES = ("LOW", "NORMAL", "HIGH")
STAGE_VALUES = (
    "LEAD",
    "CONTACTED",
    "QUALIFIED",
    "TEST_DRIVE",
    "PROPOSAL",
    "NEGOTIATION",
    "CLOSED_WON",
    "CLOSED_LOST",
)


def upgrade() -> None:
    op.create_table(
        "principal",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "client",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column(
            "urgency",
            sa.Enum(*URGENCY_VALUES, name="urgency", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["principal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "email", name="uq_client_owner_email"),
    )
    op.create_index("ix_client_owner_urgency", "client", ["owner_id", "urgency"], unique=False)

    op.create_table(
        "car",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("brand", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("version", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("year IS NULL OR (year >= 1900 AND year <= 2100)", name="ck_car_year_range"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_car_brand_model", "car", ["brand", "model"], unique=False)
    op.create_index(
        "uq_car_spec",
        "car",
        ["brand", "model", sa.text("coalesce(version, '')"), sa.text("coalesce(year, 0)")],
        unique=True,
    )

    op.create_table(
        "opportunity",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=False),
        sa.Column("car_label", sa.Text(), nullable=False),
        sa.Column("car_model_id", sa.Integer(), nullable=True),
        sa.Column(
            "stage",
            sa.Enum(*STAGE_VALUES, name="stage", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column(
            "urgency",
            sa.Enum(*URGENCY_VALUES, name="urgency", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["client.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["car_model_id"], ["car.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_opportunity_client", "opportunity", ["client_id"], unique=False)
    op.create_index("ix_opportunity_car_model", "opportunity", ["car_model_id"], unique=False)

    op.create_table(
        "note",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("opportunity_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_note_opportunity_created", "note", ["opportunity_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_note_opportunity_created", table_name="note")
    op.drop_table("note")
    op.drop_index("ix_opportunity_car_model", table_name="opportunity")
    op.drop_index("ix_opportunity_client", table_name="opportunity")
    op.drop_table("opportunity")
    op.drop_index("uq_car_spec", table_name="car")
    op.drop_index("ix_car_brand_model", table_name="car")
    op.drop_table("car")
    op.drop_index("ix_client_owner_urgency", table_name="client")
    op.drop_table("client")
    op.drop_table("principal")
