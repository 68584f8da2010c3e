"""Base model definitions, column types, and common enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable annotated column types (UUID keys, UTC timestamps)
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated

from sqlalchemy import JSON, DateTime, MetaData, TypeDecorator, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC
    so comparisons with aware datetimes keep working on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# UUID primary key generated client-side so ids are known before flush
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), nullable=False, default=utcnow),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all returnflow models."""

    metadata = metadata
    registry = type_registry


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names) in the database."""
    return [member.value for member in enum_cls]


# =============================================================================
# Common Enums
# =============================================================================


class CaseState(enum.Enum):
    """Return/exchange case lifecycle states.

    States:
        OPEN_RETURN: Return registered, awaiting a decision
        OPEN_EXCHANGE: Exchange approved, exchange parcel not created yet
        EXCHANGE_IN_PROGRESS: Exchange parcel created and linked
        CLOSED: Terminal; kept as audit history
    """

    OPEN_RETURN = "open_return"
    OPEN_EXCHANGE = "open_exchange"
    EXCHANGE_IN_PROGRESS = "exchange_in_progress"
    CLOSED = "closed"


class CaseEventType(enum.Enum):
    """Audit events recorded for every accepted case command."""

    EVT_CREATED = "evt_created"
    EVT_EXCHANGE_LAUNCHED = "evt_exchange_launched"
    EVT_EXCHANGE_PARCEL_CREATED = "evt_exchange_parcel_created"
    EVT_CONVERTED_TO_RETURN = "evt_converted_to_return"
    EVT_CLOSED = "evt_closed"
    EVT_REVERSE_TRACK_UPDATED = "evt_reverse_track_updated"
    EVT_RECEIPT_CONFIRMED = "evt_receipt_confirmed"
    EVT_EXCHANGE_DISPATCHED = "evt_exchange_dispatched"
    EVT_MERCHANT_ACTION_REQUESTED = "evt_merchant_action_requested"


class ActorType(enum.Enum):
    """Type of actor issuing a command.

    Values:
        CUSTOMER: The customer who raised the case
        SYSTEM: Automated callers (tracking callbacks)
    """

    CUSTOMER = "customer"
    SYSTEM = "system"


class MerchantActionType(enum.Enum):
    """Actions a customer can ask the store to perform manually."""

    CANCEL_EXCHANGE = "cancel_exchange"
    CONVERT_TO_RETURN = "convert_to_return"
