"""Idempotency ledger model: client keys bound to the case they created."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from returnflow.db.models.base import Base, TimestampTZ, UTCDateTime

if TYPE_CHECKING:
    from returnflow.db.models.cases import ReturnCase


class IdempotencyRecord(Base):
    """Maps a client-supplied idempotency key to the case it produced.

    Inserted in the same transaction as the case. The payload fingerprint
    distinguishes a safe retry from a key reused for a different request.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[TimestampTZ]

    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("return_cases.case_id", ondelete="CASCADE"),
        nullable=False,
    )
    parcel_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # SHA-256 hex digest of the normalised create payload
    payload_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    case: Mapped[ReturnCase] = relationship("ReturnCase")

    __table_args__ = (Index("ix_idempotency_records_expires_at", "expires_at"),)
