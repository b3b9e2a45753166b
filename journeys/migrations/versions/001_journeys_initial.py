"""Journey engine tables.

Revision ID: 001_journeys_initial
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_journeys_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Mirrors journeys.models.execution.ACTIVE_UNIQUE_WHERE at this revision.
ACTIVE_UNIQUE_WHERE = "status IN ('running', 'waiting') AND reentry_key IS NULL"


def _has_table(bind, name: str) -> bool:
    return sa.inspect(bind).has_table(name)


def _has_index(bind, table_name: str, index_name: str) -> bool:
    indexes = sa.inspect(bind).get_indexes(table_name)
    return any(idx.get("name") == index_name for idx in indexes)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _create_index(bind, name: str, table: str, columns: list[str]) -> None:
    if _has_table(bind, table) and not _has_index(bind, table, name):
        op.create_index(name, table, columns, unique=False)


def upgrade() -> None:
    bind = op.get_bind()

    if not _has_table(bind, "journey"):
        op.create_table(
            "journey",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("tenant_id", sa.Uuid(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_by", sa.String(length=255), nullable=True),
            sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_journey_tenant_id", "journey", ["tenant_id"])

    if not _has_table(bind, "journey_step"):
        op.create_table(
            "journey_step",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("journey_id", sa.Uuid(), nullable=False),
            sa.Column("step_type", sa.String(length=30), nullable=False),
            sa.Column("order_no", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=200), nullable=True),
            sa.Column("config", sa.JSON(), nullable=True),
            sa.Column("conditions", sa.JSON(), nullable=True),
            sa.Column("on_true_order_no", sa.Integer(), nullable=True),
            sa.Column("on_false_order_no", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["journey_id"], ["journey.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("journey_id", "order_no", name="uq_journey_step_order"),
        )
    _create_index(bind, "ix_journey_step_journey_id", "journey_step", ["journey_id"])

    if not _has_table(bind, "journey_execution"):
        op.create_table(
            "journey_execution",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("tenant_id", sa.Uuid(), nullable=False),
            sa.Column("journey_id", sa.Uuid(), nullable=False),
            sa.Column("contact_id", sa.Uuid(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
            sa.Column("current_step_id", sa.Uuid(), nullable=True),
            sa.Column("trigger_data", sa.JSON(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("next_step_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("leased_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("reentry_key", sa.String(length=32), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["journey_id"], ["journey.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["current_step_id"], ["journey_step.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_journey_execution_tenant_id", "journey_execution", ["tenant_id"])
    _create_index(bind, "ix_journey_execution_due", "journey_execution", ["status", "next_step_at"])
    _create_index(
        bind, "ix_journey_execution_journey_contact", "journey_execution", ["journey_id", "contact_id"]
    )
    if not _has_index(bind, "journey_execution", "uq_journey_execution_active_contact"):
        active = sa.text(ACTIVE_UNIQUE_WHERE)
        op.create_index(
            "uq_journey_execution_active_contact",
            "journey_execution",
            ["journey_id", "contact_id"],
            unique=True,
            sqlite_where=active,
            postgresql_where=active,
        )

    if not _has_table(bind, "execution_step_attempt"):
        op.create_table(
            "execution_step_attempt",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("execution_id", sa.Uuid(), nullable=False),
            sa.Column("step_id", sa.Uuid(), nullable=True),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("attempt_no", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("outcome", sa.String(length=20), nullable=False),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("detail", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(["execution_id"], ["journey_execution.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["journey_step.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(
        bind, "ix_execution_step_attempt_execution_id", "execution_step_attempt", ["execution_id"]
    )

    if not _has_table(bind, "contact"):
        op.create_table(
            "contact",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("tenant_id", sa.Uuid(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=50), nullable=True),
            sa.Column("company_name", sa.String(length=200), nullable=True),
            sa.Column("source", sa.String(length=100), nullable=True),
            sa.Column("dnd", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("custom_fields", sa.JSON(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_contact_tenant_id", "contact", ["tenant_id"])
    _create_index(bind, "ix_contact_tenant_email", "contact", ["tenant_id", "email"])

    if not _has_table(bind, "contact_tag"):
        op.create_table(
            "contact_tag",
            sa.Column("contact_id", sa.Uuid(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.ForeignKeyConstraint(["contact_id"], ["contact.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("contact_id", "name"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    for table in (
        "contact_tag",
        "contact",
        "execution_step_attempt",
        "journey_execution",
        "journey_step",
        "journey",
    ):
        if _has_table(bind, table):
            op.drop_table(table)
