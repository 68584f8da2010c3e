"""Pydantic schemas for the return case API.

Request models only check shape; trimming, length limits and the other
normalisation rules are applied by the service so that every caller gets
the same validation.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from returnflow.db.models import CaseEvent
    from returnflow.services.snapshot import CaseSnapshot

# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class CreateCaseRequest(BaseModel):
    """Request schema for opening a return or exchange case."""

    reason: str = Field(..., description="Why the goods are being returned")
    comment: str | None = Field(None, description="Optional free-text comment")
    reverse_track_number: str | None = Field(
        None, description="Carrier track number of the return shipment"
    )
    is_exchange: bool = Field(False, description="Ask for an exchange instead of a refund")
    idempotency_key: str | None = Field(
        None,
        description="Client-generated key; may also be sent as the Idempotency-Key header",
    )
    requested_at: datetime | None = Field(
        None, description="When the customer made the request (defaults to now)"
    )

    model_config = ConfigDict(extra="forbid")


class UpdateReverseTrackRequest(BaseModel):
    """Request schema for setting the return track number."""

    reverse_track_number: str | None = Field(
        ..., description="New track number; blank or null clears it"
    )
    comment: str | None = Field(
        None, description="Replacement comment; omitted or null keeps the current one"
    )

    model_config = ConfigDict(extra="forbid")


class ExchangeDispatchRequest(BaseModel):
    """Tracking callback: the exchange parcel left the store."""

    reason: str | None = Field(None, description="Text shown to explain the blocked reversal")
    dispatched_at: datetime | None = Field(None, description="When the parcel was dispatched")

    model_config = ConfigDict(extra="forbid")


class MerchantActionRequest(BaseModel):
    """Customer request for the store to reverse an exchange."""

    action: Literal["cancel_exchange", "convert_to_return"] = Field(
        ..., description="Action the store should perform"
    )

    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class PermissionsResponse(BaseModel):
    """Actions currently legal for the case."""

    allow_launch_exchange: bool
    allow_create_exchange_parcel: bool
    allow_update_reverse_track: bool
    allow_confirm_receipt: bool
    allow_close: bool
    allow_convert_to_return: bool
    allow_convert_to_exchange: bool


class ExchangeParcelResponse(BaseModel):
    id: str
    number: str | None = None
    status_label: str | None = None


class PendingMerchantActionResponse(BaseModel):
    action: str
    action_label: str
    requested_by: str
    created_at: datetime


class CaseResponse(BaseModel):
    """Authoritative case snapshot."""

    case_id: UUID = Field(..., description="Unique case identifier")
    parcel_id: str = Field(..., description="Owning parcel")
    state: str = Field(..., description="Current case state")
    state_label: str
    reason: str
    reason_label: str
    comment: str | None = None
    requested_at: datetime
    decision_at: datetime | None = None
    closed_at: datetime | None = None
    reverse_track_number: str | None = None
    receipt_confirmed: bool
    receipt_confirmed_at: datetime | None = None
    exchange_requested: bool
    exchange_parcel: ExchangeParcelResponse | None = None
    permissions: PermissionsResponse
    hint: str | None = None
    warnings: list[str] = Field(default_factory=list)
    cancel_unavailable_reason: str | None = None
    pending_merchant_actions: list[PendingMerchantActionResponse] = Field(default_factory=list)
    version: int = Field(..., description="Increases on every change; drop older responses")

    @classmethod
    def from_snapshot(cls, snapshot: CaseSnapshot) -> CaseResponse:
        return cls.model_validate(snapshot.to_dict())


class CaseListResponse(BaseModel):
    cases: list[CaseResponse]
    count: int


class CaseEventResponse(BaseModel):
    """Audit trail entry."""

    event_id: UUID
    event_type: str
    event_time: datetime
    from_state: str | None = None
    to_state: str
    actor_type: str
    actor_ref: str
    event_metadata: dict[str, Any] | None = None

    @classmethod
    def from_event(cls, event: CaseEvent) -> CaseEventResponse:
        return cls(
            event_id=event.event_id,
            event_type=event.event_type.value,
            event_time=event.event_time,
            from_state=event.from_state.value if event.from_state else None,
            to_state=event.to_state.value,
            actor_type=event.actor_type.value,
            actor_ref=event.actor_ref,
            event_metadata=event.event_metadata,
        )


class CaseEventListResponse(BaseModel):
    case_id: UUID
    events: list[CaseEventResponse]
