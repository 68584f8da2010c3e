"""Typed errors for case commands.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so
callers can decide whether to retry as-is, fix their input, or give up.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from uuid import UUID


class CaseError(Exception):
    """Base class for all case command errors."""

    code: str = "case_error"
    retryable: bool = False

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form used by the API layer and logs."""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }


class CaseValidationError(CaseError):
    """Malformed command payload; rejected before touching state."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class ParcelNotEligibleError(CaseError):
    """The parcel cannot start a return right now."""

    code = "not_eligible"

    def __init__(self, parcel_id: str, reason: str) -> None:
        self.parcel_id = parcel_id
        super().__init__(reason, {"parcel_id": parcel_id})


class CaseNotFoundError(CaseError):
    """No case with this id exists for the parcel."""

    code = "not_found"

    def __init__(self, parcel_id: str, case_id: UUID | str) -> None:
        self.parcel_id = parcel_id
        self.case_id = case_id
        super().__init__(
            f"Case {case_id} not found for parcel {parcel_id}",
            {"parcel_id": parcel_id, "case_id": str(case_id)},
        )


class ParcelNotFoundError(CaseError):
    """Parcel tracking does not know this parcel."""

    code = "not_found"

    def __init__(self, parcel_id: str) -> None:
        self.parcel_id = parcel_id
        super().__init__(f"Parcel {parcel_id} not found", {"parcel_id": parcel_id})


class CaseClosedError(CaseError):
    """Command issued against a closed (terminal) case."""

    code = "closed"

    def __init__(self, case_id: UUID) -> None:
        self.case_id = case_id
        super().__init__(f"Case {case_id} is closed", {"case_id": str(case_id)})


class TransitionNotAllowedError(CaseError):
    """A guard failed: the permission behind the command is currently false."""

    code = "transition_not_allowed"

    def __init__(
        self,
        case_id: UUID,
        command: str,
        permission: str,
        blocked_reason: str | None = None,
    ) -> None:
        self.case_id = case_id
        self.command = command
        self.permission = permission
        self.blocked_reason = blocked_reason
        message = blocked_reason or f"{command} is not allowed in the current case state"
        super().__init__(
            message,
            {
                "case_id": str(case_id),
                "command": command,
                "permission": permission,
                "blocked_reason": blocked_reason,
            },
        )


class IdempotencyConflictError(CaseError):
    """Idempotency key reused with a materially different payload."""

    code = "idempotency_conflict"

    def __init__(self, key: str, case_id: UUID) -> None:
        self.key = key
        self.case_id = case_id
        super().__init__(
            "Idempotency key already used for a different request",
            {"idempotency_key": key, "case_id": str(case_id)},
        )


class CaseStoreUnavailableError(CaseError):
    """Persistence failed or lost a concurrent update; safe to retry."""

    code = "unavailable"
    retryable = True


class CollaboratorError(CaseError):
    """Parcel tracking rejected a request."""

    code = "collaborator_error"


class CollaboratorUnavailableError(CollaboratorError):
    """Parcel tracking did not answer in time; safe to retry."""

    code = "unavailable"
    retryable = True
