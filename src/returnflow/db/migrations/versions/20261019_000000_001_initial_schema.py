"""Initial schema for return cases.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- return_cases (case state machine, one active case per parcel)
- case_events (append-only audit trail)
- case_action_requests (customer requests for manual store action)
- idempotency_records (create-case idempotency ledger)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

CASE_STATES = ("open_return", "open_exchange", "exchange_in_progress", "closed")
EVENT_TYPES = (
    "evt_created",
    "evt_exchange_launched",
    "evt_exchange_parcel_created",
    "evt_converted_to_return",
    "evt_closed",
    "evt_reverse_track_updated",
    "evt_receipt_confirmed",
    "evt_exchange_dispatched",
    "evt_merchant_action_requested",
)


def upgrade() -> None:
    """Apply migration: Initial schema for return cases."""
    case_state = postgresql.ENUM(*CASE_STATES, name="case_state", create_type=False)
    case_state.create(op.get_bind(), checkfirst=True)

    case_event_type = postgresql.ENUM(*EVENT_TYPES, name="case_event_type", create_type=False)
    case_event_type.create(op.get_bind(), checkfirst=True)

    actor_type = postgresql.ENUM(
        "customer", "system", name="actor_type", create_type=False
    )
    actor_type.create(op.get_bind(), checkfirst=True)

    merchant_action_type = postgresql.ENUM(
        "cancel_exchange", "convert_to_return", name="merchant_action_type", create_type=False
    )
    merchant_action_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "return_cases",
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("parcel_id", sa.String(64), nullable=False),
        sa.Column("state", case_state, nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("decision_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reverse_track_number", sa.String(64), nullable=True),
        sa.Column("receipt_confirmed", sa.Boolean(), nullable=False),
        sa.Column("receipt_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exchange_requested", sa.Boolean(), nullable=False),
        sa.Column("exchange_parcel_id", sa.String(64), nullable=True),
        sa.Column("exchange_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_unavailable_reason", sa.String(500), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("case_id", name=op.f("pk_return_cases")),
    )
    op.create_index(
        op.f("ix_return_cases_parcel_id"), "return_cases", ["parcel_id"], unique=False
    )
    op.create_index(op.f("ix_return_cases_state"), "return_cases", ["state"], unique=False)
    op.create_index(
        op.f("ix_return_cases_idempotency_key"),
        "return_cases",
        ["idempotency_key"],
        unique=False,
    )
    # At most one non-closed case per parcel
    op.create_index(
        "uq_return_cases_active_parcel",
        "return_cases",
        ["parcel_id"],
        unique=True,
        postgresql_where=sa.text("state <> 'closed'"),
    )

    op.create_table(
        "case_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", case_event_type, nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_state", case_state, nullable=True),
        sa.Column("to_state", case_state, nullable=False),
        sa.Column("actor_type", actor_type, nullable=False),
        sa.Column("actor_ref", sa.String(255), nullable=False),
        sa.Column("event_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(
            ["case_id"],
            ["return_cases.case_id"],
            name=op.f("fk_case_events_case_id_return_cases"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_case_events")),
    )
    op.create_index(op.f("ix_case_events_case_id"), "case_events", ["case_id"], unique=False)
    op.create_index(
        op.f("ix_case_events_event_time"), "case_events", ["event_time"], unique=False
    )

    op.create_table(
        "case_action_requests",
        sa.Column("action_request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", merchant_action_type, nullable=False),
        sa.Column("requested_by", sa.String(255), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["case_id"],
            ["return_cases.case_id"],
            name=op.f("fk_case_action_requests_case_id_return_cases"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("action_request_id", name=op.f("pk_case_action_requests")),
    )
    op.create_index(
        op.f("ix_case_action_requests_case_id"),
        "case_action_requests",
        ["case_id"],
        unique=False,
    )

    op.create_table(
        "idempotency_records",
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("parcel_id", sa.String(64), nullable=False),
        sa.Column("payload_fingerprint", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["case_id"],
            ["return_cases.case_id"],
            name=op.f("fk_idempotency_records_case_id_return_cases"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("key", name=op.f("pk_idempotency_records")),
    )
    op.create_index(
        op.f("ix_idempotency_records_expires_at"),
        "idempotency_records",
        ["expires_at"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: Initial schema for return cases."""
    op.drop_table("idempotency_records")
    op.drop_table("case_action_requests")
    op.drop_table("case_events")
    op.drop_table("return_cases")

    op.execute("DROP TYPE IF EXISTS merchant_action_type")
    op.execute("DROP TYPE IF EXISTS actor_type")
    op.execute("DROP TYPE IF EXISTS case_event_type")
    op.execute("DROP TYPE IF EXISTS case_state")
