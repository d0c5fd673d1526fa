"""create event outbox, cursor and dead-letter tables

Revision ID: 3c1f0e8b9a21
Revises:
Create Date: 2026-10-18 09:12:40.518233
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3c1f0e8b9a21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _event_id_type():
    return sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _payload_type():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "event_outbox",
        sa.Column("event_id", _event_id_type(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("payload", _payload_type(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_event_outbox_org_event", "event_outbox", ["organization_id", "event_id"], unique=False)
    op.create_index("ix_event_outbox_delivered_at", "event_outbox", ["delivered_at"], unique=False)
    op.create_index("ix_event_outbox_attempts", "event_outbox", ["delivery_attempts"], unique=False)

    op.create_table(
        "event_outbox_cursor",
        sa.Column("processor_name", sa.String(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("last_processed_event_id", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("events_processed_count", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("processor_name", "organization_id"),
    )

    op.create_table(
        "event_outbox_dead_letter",
        sa.Column("id", _event_id_type(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("original_event_id", sa.BigInteger(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("payload", _payload_type(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("moved_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("original_event_id", name="uq_event_outbox_dead_letter_original"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        op.f("ix_event_outbox_dead_letter_organization_id"),
        "event_outbox_dead_letter",
        ["organization_id"],
        unique=False,
    )
    op.create_index("ix_event_outbox_dead_letter_moved_at", "event_outbox_dead_letter", ["moved_at"], unique=False)

    op.create_table(
        "cataloging_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
    )
    op.create_index(op.f("ix_cataloging_jobs_organization_id"), "cataloging_jobs", ["organization_id"], unique=False)

    op.create_table(
        "flags",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("flag_type", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_flags_organization_id"), "flags", ["organization_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_flags_organization_id"), table_name="flags")
    op.drop_table("flags")
    op.drop_index(op.f("ix_cataloging_jobs_organization_id"), table_name="cataloging_jobs")
    op.drop_table("cataloging_jobs")
    op.drop_index("ix_event_outbox_dead_letter_moved_at", table_name="event_outbox_dead_letter")
    op.drop_index(op.f("ix_event_outbox_dead_letter_organization_id"), table_name="event_outbox_dead_letter")
    op.drop_table("event_outbox_dead_letter")
    op.drop_table("event_outbox_cursor")
    op.drop_index("ix_event_outbox_attempts", table_name="event_outbox")
    op.drop_index("ix_event_outbox_delivered_at", table_name="event_outbox")
    op.drop_index("ix_event_outbox_org_event", table_name="event_outbox")
    op.drop_table("event_outbox")
