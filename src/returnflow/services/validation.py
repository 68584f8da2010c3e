"""Input normalisation for case commands.

All normalisers raise CaseValidationError before any state is touched.
Normalised values are what gets stored and what the idempotency
fingerprint is computed from, so ``" size mismatch "`` and
``"size mismatch"`` are the same request.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from returnflow.db.models.base import utcnow
from returnflow.services.errors import CaseValidationError

MAX_PARCEL_ID_LENGTH = 64
MAX_REASON_LENGTH = 255
MAX_COMMENT_LENGTH = 2000
MAX_TRACK_NUMBER_LENGTH = 64
MAX_IDEMPOTENCY_KEY_LENGTH = 128
MAX_BLOCK_REASON_LENGTH = 500

# Tolerated client clock skew for requested_at
MAX_FUTURE_SKEW = timedelta(minutes=1)


@dataclass(frozen=True, slots=True)
class CreateCaseCommand:
    """Validated and normalised create-case payload."""

    parcel_id: str
    reason: str
    comment: str | None
    requested_at: datetime
    reverse_track_number: str | None
    is_exchange: bool
    idempotency_key: str


def normalize_parcel_id(parcel_id: str | int) -> str:
    value = str(parcel_id).strip() if parcel_id is not None else ""
    if not value:
        raise CaseValidationError("Parcel id is required", field="parcel_id")
    if len(value) > MAX_PARCEL_ID_LENGTH:
        raise CaseValidationError("Parcel id is too long", field="parcel_id")
    return value


def normalize_reason(reason: str | None) -> str:
    value = (reason or "").strip()
    if not value:
        raise CaseValidationError("Reason is required", field="reason")
    if len(value) > MAX_REASON_LENGTH:
        raise CaseValidationError(
            f"Reason must be at most {MAX_REASON_LENGTH} characters", field="reason"
        )
    return value


def normalize_comment(comment: str | None) -> str | None:
    """Trim a comment; blank comments become None."""
    if comment is None:
        return None
    value = comment.strip()
    if not value:
        return None
    if len(value) > MAX_COMMENT_LENGTH:
        raise CaseValidationError(
            f"Comment must be at most {MAX_COMMENT_LENGTH} characters", field="comment"
        )
    return value


def normalize_track_number(track_number: str | None) -> str | None:
    """Trim and upper-case a reverse track number; blank becomes None."""
    if track_number is None:
        return None
    value = track_number.strip().upper()
    if not value:
        return None
    if len(value) > MAX_TRACK_NUMBER_LENGTH:
        raise CaseValidationError(
            f"Track number must be at most {MAX_TRACK_NUMBER_LENGTH} characters",
            field="reverse_track_number",
        )
    return value


def normalize_requested_at(requested_at: datetime | None, now: datetime | None = None) -> datetime:
    """Convert to UTC, defaulting to now.

    Naive datetimes are taken to be UTC. Values more than a minute ahead of
    the server clock are rejected.
    """
    now = now or utcnow()
    if requested_at is None:
        return now
    if requested_at.tzinfo is None:
        requested_at = requested_at.replace(tzinfo=UTC)
    value = requested_at.astimezone(UTC)
    if value > now + MAX_FUTURE_SKEW:
        raise CaseValidationError("Request time cannot be in the future", field="requested_at")
    return value


def normalize_idempotency_key(key: str | None) -> str:
    value = (key or "").strip()
    if not value:
        raise CaseValidationError("Idempotency key is required", field="idempotency_key")
    if len(value) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise CaseValidationError(
            f"Idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            field="idempotency_key",
        )
    return value


def normalize_block_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    value = reason.strip()
    return value[:MAX_BLOCK_REASON_LENGTH] or None


def build_create_command(
    parcel_id: str | int,
    *,
    reason: str | None,
    idempotency_key: str | None,
    is_exchange: bool = False,
    comment: str | None = None,
    reverse_track_number: str | None = None,
    requested_at: datetime | None = None,
    now: datetime | None = None,
) -> CreateCaseCommand:
    """Validate a create request and return its normalised form.

    Raises:
        CaseValidationError: The first invalid field encountered.
    """
    return CreateCaseCommand(
        parcel_id=normalize_parcel_id(parcel_id),
        reason=normalize_reason(reason),
        comment=normalize_comment(comment),
        requested_at=normalize_requested_at(requested_at, now),
        reverse_track_number=normalize_track_number(reverse_track_number),
        is_exchange=bool(is_exchange),
        idempotency_key=normalize_idempotency_key(idempotency_key),
    )
