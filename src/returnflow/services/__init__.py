"""returnflow service layer.

This package contains the case engine and its collaborators:
- CaseLifecycleService: Case state machine and command processing
- derive / PermissionSet: Permission derivation from the case row
- build_snapshot / CaseSnapshot: Authoritative case projection
- IdempotencyLedger: Idempotent case creation
- CaseEventPublisher: Row-level update fan-out
- HttpParcelTrackingClient / InMemoryParcelTracking: Parcel tracking adapters
"""

from returnflow.services.errors import (
    CaseClosedError,
    CaseError,
    CaseNotFoundError,
    CaseStoreUnavailableError,
    CaseValidationError,
    CollaboratorError,
    CollaboratorUnavailableError,
    IdempotencyConflictError,
    ParcelNotEligibleError,
    ParcelNotFoundError,
    TransitionNotAllowedError,
)
from returnflow.services.events import CaseEventPublisher, CaseRowUpdate
from returnflow.services.idempotency import IdempotencyLedger, payload_fingerprint
from returnflow.services.lifecycle import (
    CUSTOMER_ACTOR,
    SYSTEM_ACTOR,
    Actor,
    CaseLifecycleService,
    CommandResult,
)
from returnflow.services.parcels import (
    ExchangeParcelInfo,
    ExchangeParcelRef,
    HttpParcelTrackingClient,
    InMemoryParcelTracking,
    ParcelTrackingConfig,
)
from returnflow.services.permissions import PermissionSet, blocked_reason, derive
from returnflow.services.snapshot import CaseSnapshot, build_snapshot

__all__ = [
    "CUSTOMER_ACTOR",
    "SYSTEM_ACTOR",
    "Actor",
    "CaseClosedError",
    "CaseError",
    "CaseEventPublisher",
    "CaseLifecycleService",
    "CaseNotFoundError",
    "CaseRowUpdate",
    "CaseSnapshot",
    "CaseStoreUnavailableError",
    "CaseValidationError",
    "CollaboratorError",
    "CollaboratorUnavailableError",
    "CommandResult",
    "ExchangeParcelInfo",
    "ExchangeParcelRef",
    "HttpParcelTrackingClient",
    "IdempotencyConflictError",
    "IdempotencyLedger",
    "InMemoryParcelTracking",
    "ParcelNotEligibleError",
    "ParcelNotFoundError",
    "ParcelTrackingConfig",
    "PermissionSet",
    "TransitionNotAllowedError",
    "blocked_reason",
    "build_snapshot",
    "derive",
    "payload_fingerprint",
]
