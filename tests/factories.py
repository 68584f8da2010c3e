"""Test data factories for returnflow.

This module provides factory functions for creating test data.
Use these to build consistent, valid test objects without duplicating
data structures across tests.
"""

from datetime import UTC, datetime
from uuid import uuid4

from returnflow.db.models import CaseActionRequest, ReturnCase
from returnflow.db.models.base import CaseState, MerchantActionType

# Parcel registered as eligible in the default tracking fixture
ELIGIBLE_PARCEL_ID = "12"


def build_case(
    state: CaseState = CaseState.OPEN_RETURN,
    parcel_id: str = "12",
    reason: str = "size_mismatch",
    receipt_confirmed: bool = False,
    exchange_parcel_id: str | None = None,
    exchange_dispatched_at: datetime | None = None,
    cancel_unavailable_reason: str | None = None,
    reverse_track_number: str | None = None,
    comment: str | None = None,
    version: int = 1,
) -> ReturnCase:
    """Build an unsaved ReturnCase row.

    Args:
        state: Case state.
        parcel_id: Owning parcel.
        reason: Return reason code or free text.
        receipt_confirmed: Whether the returned goods arrived.
        exchange_parcel_id: Linked exchange parcel, if any.
        exchange_dispatched_at: Dispatch time reported by tracking.
        cancel_unavailable_reason: Block reason reported by tracking.
        reverse_track_number: Return shipment track number.
        comment: Customer comment.
        version: Row version.

    Returns:
        ReturnCase instance not attached to any session.
    """
    now = datetime.now(UTC)
    return ReturnCase(
        case_id=uuid4(),
        parcel_id=parcel_id,
        state=state,
        reason=reason,
        comment=comment,
        requested_at=now,
        decision_at=now if state != CaseState.OPEN_RETURN else None,
        closed_at=now if state == CaseState.CLOSED else None,
        reverse_track_number=reverse_track_number,
        receipt_confirmed=receipt_confirmed,
        receipt_confirmed_at=now if receipt_confirmed else None,
        exchange_requested=state in (CaseState.OPEN_EXCHANGE, CaseState.EXCHANGE_IN_PROGRESS),
        exchange_parcel_id=exchange_parcel_id,
        exchange_dispatched_at=exchange_dispatched_at,
        cancel_unavailable_reason=cancel_unavailable_reason,
        idempotency_key=f"key-{uuid4().hex[:8]}",
        version=version,
        created_at=now,
        updated_at=now,
    )


def build_action_request(
    case: ReturnCase,
    action: MerchantActionType = MerchantActionType.CANCEL_EXCHANGE,
    requested_by: str = "detail-modal",
) -> CaseActionRequest:
    """Build an unsaved, unprocessed merchant action request for ``case``."""
    return CaseActionRequest(
        action_request_id=uuid4(),
        case_id=case.case_id,
        action=action,
        requested_by=requested_by,
        created_at=datetime.now(UTC),
    )


def create_case_payload(
    reason: str = "size_mismatch",
    idempotency_key: str | None = None,
    is_exchange: bool = False,
    comment: str | None = None,
    reverse_track_number: str | None = None,
) -> dict:
    """Create a create-case request body.

    Args:
        reason: Return reason.
        idempotency_key: Client key. Auto-generated if None.
        is_exchange: Ask for an exchange.
        comment: Optional comment.
        reverse_track_number: Optional track number.

    Returns:
        Dict ready to post as JSON.
    """
    payload: dict = {
        "reason": reason,
        "idempotency_key": idempotency_key or f"key-{uuid4().hex}",
        "is_exchange": is_exchange,
    }
    if comment is not None:
        payload["comment"] = comment
    if reverse_track_number is not None:
        payload["reverse_track_number"] = reverse_track_number
    return payload
