"""Permission derivation for return/exchange cases.

``derive`` is a pure function of the case row: state, the receipt flag,
exchange parcel linkage and the dispatch fact. It performs no I/O and is
called on every read and every command, so the flags a caller sees and the
flags a command is checked against are always the same computation.
Permissions are never stored.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Protocol

from returnflow.db.models.base import CaseState

if TYPE_CHECKING:
    from datetime import datetime

# Shown when tracking reports the exchange parcel left the store
DEFAULT_DISPATCH_BLOCK_REASON = (
    "The exchange parcel has already been dispatched; ask the store to cancel the exchange"
)

EXCHANGE_STATES = frozenset({CaseState.OPEN_EXCHANGE, CaseState.EXCHANGE_IN_PROGRESS})


class CaseLike(Protocol):
    """Fields of a case that permissions depend on."""

    state: CaseState
    receipt_confirmed: bool
    exchange_parcel_id: str | None
    exchange_dispatched_at: datetime | None
    cancel_unavailable_reason: str | None


@dataclass(frozen=True, slots=True)
class PermissionSet:
    """Actions currently legal for a case.

    ``allow_launch_exchange`` and ``allow_convert_to_exchange`` describe the
    same transition as reached from the detail view and from a list row.
    """

    allow_launch_exchange: bool
    allow_create_exchange_parcel: bool
    allow_update_reverse_track: bool
    allow_confirm_receipt: bool
    allow_close: bool
    allow_convert_to_return: bool
    allow_convert_to_exchange: bool

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


def is_exchange_dispatched(case: CaseLike) -> bool:
    """Whether tracking has reported the exchange parcel as shipped."""
    return case.exchange_dispatched_at is not None


def convert_block_reason(case: CaseLike) -> str | None:
    """Downstream fact that prevents reverting an exchange, if any."""
    if case.state not in EXCHANGE_STATES:
        return None
    if case.cancel_unavailable_reason:
        return case.cancel_unavailable_reason
    if is_exchange_dispatched(case):
        return DEFAULT_DISPATCH_BLOCK_REASON
    return None


def derive(case: CaseLike) -> PermissionSet:
    """Derive the permission set for a case.

    Args:
        case: Case row (or any object exposing the same fields).

    Returns:
        Freshly computed PermissionSet.
    """
    state = case.state
    open_ = state != CaseState.CLOSED
    exchange_active = state in EXCHANGE_STATES
    can_start_exchange = state == CaseState.OPEN_RETURN

    # An exchange may only be closed once goods are back or the replacement shipped
    allow_close = open_ and (
        state == CaseState.OPEN_RETURN or case.receipt_confirmed or is_exchange_dispatched(case)
    )

    return PermissionSet(
        allow_launch_exchange=can_start_exchange,
        allow_create_exchange_parcel=(
            state == CaseState.OPEN_EXCHANGE and case.exchange_parcel_id is None
        ),
        allow_update_reverse_track=open_,
        allow_confirm_receipt=open_ and not case.receipt_confirmed,
        allow_close=allow_close,
        allow_convert_to_return=exchange_active and convert_block_reason(case) is None,
        allow_convert_to_exchange=can_start_exchange,
    )


def blocked_reason(case: CaseLike, permission: str) -> str | None:
    """Human-readable explanation for a false permission.

    Args:
        case: Case the permission was derived for.
        permission: PermissionSet field name.

    Returns:
        Explanation text, or None when the permission is granted or no
        specific reason applies.
    """
    if getattr(derive(case), permission):
        return None

    state = case.state
    if state == CaseState.CLOSED:
        return "The case is closed"

    if permission in ("allow_launch_exchange", "allow_convert_to_exchange"):
        return "An exchange can only be launched from an open return"
    if permission == "allow_create_exchange_parcel":
        if case.exchange_parcel_id is not None:
            return "An exchange parcel has already been created for this case"
        return "Launch the exchange before creating the exchange parcel"
    if permission == "allow_convert_to_return":
        return convert_block_reason(case) or "Only an exchange can be converted back to a return"
    if permission == "allow_close":
        return "Confirm receipt of the returned goods before closing an exchange"
    if permission == "allow_confirm_receipt":
        return "Receipt has already been confirmed"
    return None
