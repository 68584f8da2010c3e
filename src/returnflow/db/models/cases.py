"""Case-related models: return cases, their audit events and merchant requests."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from returnflow.db.models.base import (
    ActorType,
    Base,
    CaseEventType,
    CaseState,
    JSONType,
    MerchantActionType,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)

# Partial index predicate shared by PostgreSQL and SQLite
ACTIVE_CASE_PREDICATE = text("state <> 'closed'")


class ReturnCase(Base):
    """A return or exchange request raised against a parcel.

    At most one non-closed case exists per parcel; closed cases are kept
    forever as history.
    """

    __tablename__ = "return_cases"

    case_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # External parcel reference (owned by parcel tracking)
    parcel_id: Mapped[str] = mapped_column(String(64), nullable=False)

    state: Mapped[CaseState] = mapped_column(
        Enum(
            CaseState,
            name="case_state",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=CaseState.OPEN_RETURN,
    )

    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[TimestampTZ]
    decision_at: Mapped[OptionalTimestampTZ]
    closed_at: Mapped[OptionalTimestampTZ]

    reverse_track_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Physical receipt of the returned goods; one-way flag
    receipt_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    receipt_confirmed_at: Mapped[OptionalTimestampTZ]

    # Customer asked for an exchange when registering the case
    exchange_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    exchange_parcel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Downstream fact from tracking: the exchange parcel left the store
    exchange_dispatched_at: Mapped[OptionalTimestampTZ]
    cancel_unavailable_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Creating key; the ledger row may be purged after retention
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    # Bumped by SQLAlchemy on every UPDATE; also the snapshot sequence number
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_return_cases_parcel_id", "parcel_id"),
        Index("ix_return_cases_state", "state"),
        Index("ix_return_cases_idempotency_key", "idempotency_key"),
        Index(
            "uq_return_cases_active_parcel",
            "parcel_id",
            unique=True,
            postgresql_where=ACTIVE_CASE_PREDICATE,
            sqlite_where=ACTIVE_CASE_PREDICATE,
        ),
    )

    @property
    def is_closed(self) -> bool:
        return self.state == CaseState.CLOSED


class CaseEvent(Base):
    """Append-only audit record of an accepted case command."""

    __tablename__ = "case_events"

    event_id: Mapped[UUIDPrimaryKey]

    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("return_cases.case_id", ondelete="RESTRICT"),
        nullable=False,
    )

    event_type: Mapped[CaseEventType] = mapped_column(
        Enum(
            CaseEventType,
            name="case_event_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    event_time: Mapped[TimestampTZ]

    from_state: Mapped[CaseState | None] = mapped_column(
        Enum(CaseState, name="case_state", values_callable=enum_values),
        nullable=True,
    )
    to_state: Mapped[CaseState] = mapped_column(
        Enum(CaseState, name="case_state", values_callable=enum_values),
        nullable=False,
    )

    actor_type: Mapped[ActorType] = mapped_column(
        Enum(ActorType, name="actor_type", create_constraint=True, values_callable=enum_values),
        nullable=False,
    )
    # Caller surface or user reference, free-form
    actor_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    event_metadata: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    case: Mapped[ReturnCase] = relationship("ReturnCase")

    __table_args__ = (
        Index("ix_case_events_case_id", "case_id"),
        Index("ix_case_events_event_time", "event_time"),
    )


class CaseActionRequest(Base):
    """Customer request for the store to reverse an exchange manually.

    Raised when automatic cancellation is blocked (e.g. the exchange parcel
    already shipped). One unprocessed request per (case, action).
    """

    __tablename__ = "case_action_requests"

    action_request_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("return_cases.case_id", ondelete="RESTRICT"),
        nullable=False,
    )

    action: Mapped[MerchantActionType] = mapped_column(
        Enum(
            MerchantActionType,
            name="merchant_action_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    processed_at: Mapped[OptionalTimestampTZ]

    case: Mapped[ReturnCase] = relationship("ReturnCase")

    __table_args__ = (Index("ix_case_action_requests_case_id", "case_id"),)
