"""Case snapshot projection.

A snapshot is the complete, authoritative view of a case returned by every
command and read. Permission flags always come from ``permissions.derive``;
labels, hint and warnings are fixed functions of the case row and those
flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from returnflow.db.models.base import CaseState
from returnflow.services.permissions import PermissionSet, convert_block_reason, derive

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from uuid import UUID

    from returnflow.db.models import CaseActionRequest, ReturnCase
    from returnflow.services.parcels import ExchangeParcelInfo

STATE_LABELS: dict[CaseState, str] = {
    CaseState.OPEN_RETURN: "Return requested",
    CaseState.OPEN_EXCHANGE: "Exchange approved",
    CaseState.EXCHANGE_IN_PROGRESS: "Exchange in progress",
    CaseState.CLOSED: "Closed",
}

# Preset reasons offered by the customer surfaces; free text is shown as-is
REASON_LABELS: dict[str, str] = {
    "size_mismatch": "Size mismatch",
    "defective": "Defective item",
    "wrong_item": "Wrong item received",
    "not_as_described": "Item not as described",
    "changed_mind": "Changed my mind",
    "other": "Other",
}

MERCHANT_ACTION_LABELS: dict[str, str] = {
    "cancel_exchange": "Cancel the exchange",
    "convert_to_return": "Convert the exchange to a return",
}

RECEIPT_BEFORE_PARCEL_WARNING = (
    "Confirm receipt of the returned goods before creating the exchange parcel"
)
RECEIPT_BEFORE_CLOSE_WARNING = "Confirm receipt of the returned goods before closing the exchange"
EXCHANGE_PARCEL_MISSING_WARNING = "Exchange parcel details are temporarily unavailable"
PENDING_ACTION_WARNING = "A request to the store is waiting to be processed"


@dataclass(frozen=True, slots=True)
class ExchangeParcelView:
    id: str
    number: str | None
    status_label: str | None


@dataclass(frozen=True, slots=True)
class PendingMerchantAction:
    action: str
    action_label: str
    requested_by: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class CaseSnapshot:
    """Authoritative case view handed to every caller."""

    case_id: UUID
    parcel_id: str
    state: CaseState
    state_label: str
    reason: str
    reason_label: str
    comment: str | None
    requested_at: datetime
    decision_at: datetime | None
    closed_at: datetime | None
    reverse_track_number: str | None
    receipt_confirmed: bool
    receipt_confirmed_at: datetime | None
    exchange_requested: bool
    exchange_parcel: ExchangeParcelView | None
    permissions: PermissionSet
    hint: str | None
    warnings: tuple[str, ...]
    cancel_unavailable_reason: str | None
    version: int
    pending_merchant_actions: tuple[PendingMerchantAction, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form with enum values and ISO timestamps."""

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "case_id": str(self.case_id),
            "parcel_id": self.parcel_id,
            "state": self.state.value,
            "state_label": self.state_label,
            "reason": self.reason,
            "reason_label": self.reason_label,
            "comment": self.comment,
            "requested_at": iso(self.requested_at),
            "decision_at": iso(self.decision_at),
            "closed_at": iso(self.closed_at),
            "reverse_track_number": self.reverse_track_number,
            "receipt_confirmed": self.receipt_confirmed,
            "receipt_confirmed_at": iso(self.receipt_confirmed_at),
            "exchange_requested": self.exchange_requested,
            "exchange_parcel": (
                {
                    "id": self.exchange_parcel.id,
                    "number": self.exchange_parcel.number,
                    "status_label": self.exchange_parcel.status_label,
                }
                if self.exchange_parcel
                else None
            ),
            "permissions": self.permissions.as_dict(),
            "hint": self.hint,
            "warnings": list(self.warnings),
            "cancel_unavailable_reason": self.cancel_unavailable_reason,
            "pending_merchant_actions": [
                {
                    "action": item.action,
                    "action_label": item.action_label,
                    "requested_by": item.requested_by,
                    "created_at": iso(item.created_at),
                }
                for item in self.pending_merchant_actions
            ],
            "version": self.version,
        }


def state_label(state: CaseState) -> str:
    return STATE_LABELS.get(state, state.value)


def reason_label(reason: str) -> str:
    return REASON_LABELS.get(reason.strip().lower(), reason)


def build_hint(case: ReturnCase, permissions: PermissionSet) -> str | None:
    """One-line guidance on what happens next."""
    state = case.state
    if state == CaseState.CLOSED:
        return "This case is closed."
    if state == CaseState.OPEN_RETURN:
        if not case.reverse_track_number:
            return "Send the goods back and add the return track number."
        if not case.receipt_confirmed:
            return "Waiting for the store to confirm receipt of the returned goods."
        return "The returned goods have been received; the case can be closed."
    if state == CaseState.OPEN_EXCHANGE:
        if permissions.allow_create_exchange_parcel:
            return "Create the exchange parcel to continue the exchange."
        return "The exchange has been approved."
    if case.exchange_dispatched_at is not None:
        return "The exchange parcel has been dispatched."
    return "The exchange parcel is being prepared by the store."


def build_warnings(
    case: ReturnCase,
    permissions: PermissionSet,
    pending: tuple[PendingMerchantAction, ...],
    *,
    exchange_parcel_missing: bool = False,
) -> tuple[str, ...]:
    warnings: list[str] = []
    if case.state == CaseState.CLOSED:
        return ()

    if (
        case.state == CaseState.OPEN_EXCHANGE
        and permissions.allow_create_exchange_parcel
        and not case.receipt_confirmed
    ):
        warnings.append(RECEIPT_BEFORE_PARCEL_WARNING)
    if case.state == CaseState.EXCHANGE_IN_PROGRESS and not permissions.allow_close:
        warnings.append(RECEIPT_BEFORE_CLOSE_WARNING)

    block = convert_block_reason(case)
    if block:
        warnings.append(block)

    if exchange_parcel_missing:
        warnings.append(EXCHANGE_PARCEL_MISSING_WARNING)

    if pending:
        warnings.append(PENDING_ACTION_WARNING)
    return tuple(warnings)


def _exchange_parcel_view(
    case: ReturnCase, info: ExchangeParcelInfo | None
) -> ExchangeParcelView | None:
    if not case.exchange_parcel_id:
        return None
    if info is None:
        # Tracking did not describe it; expose the id only
        return ExchangeParcelView(id=case.exchange_parcel_id, number=None, status_label=None)
    return ExchangeParcelView(id=info.id, number=info.number, status_label=info.status_label)


def build_snapshot(
    case: ReturnCase,
    permissions: PermissionSet | None = None,
    exchange_parcel: ExchangeParcelInfo | None = None,
    pending_actions: Iterable[CaseActionRequest] = (),
) -> CaseSnapshot:
    """Project a case row into a snapshot.

    Args:
        case: Persisted case row.
        permissions: Pre-derived permissions; derived here when omitted.
        exchange_parcel: Tracking summary of the linked exchange parcel.
        pending_actions: Unprocessed merchant action requests.

    Returns:
        CaseSnapshot reflecting the row as given.
    """
    if permissions is None:
        permissions = derive(case)

    pending = tuple(
        PendingMerchantAction(
            action=item.action.value,
            action_label=MERCHANT_ACTION_LABELS.get(item.action.value, item.action.value),
            requested_by=item.requested_by,
            created_at=item.created_at,
        )
        for item in pending_actions
    )
    parcel_view = _exchange_parcel_view(case, exchange_parcel)

    return CaseSnapshot(
        case_id=case.case_id,
        parcel_id=case.parcel_id,
        state=case.state,
        state_label=state_label(case.state),
        reason=case.reason,
        reason_label=reason_label(case.reason),
        comment=case.comment,
        requested_at=case.requested_at,
        decision_at=case.decision_at,
        closed_at=case.closed_at,
        reverse_track_number=case.reverse_track_number,
        receipt_confirmed=case.receipt_confirmed,
        receipt_confirmed_at=case.receipt_confirmed_at,
        exchange_requested=case.exchange_requested,
        exchange_parcel=parcel_view,
        permissions=permissions,
        hint=build_hint(case, permissions),
        warnings=build_warnings(
            case,
            permissions,
            pending,
            exchange_parcel_missing=bool(case.exchange_parcel_id) and exchange_parcel is None,
        ),
        cancel_unavailable_reason=case.cancel_unavailable_reason,
        version=case.version,
        pending_merchant_actions=pending,
    )
