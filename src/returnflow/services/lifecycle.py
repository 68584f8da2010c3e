"""Return case lifecycle service.

This module implements the case state machine:
- Permission-guarded transitions (guards come from ``permissions.derive``)
- One transaction per command, with the case row locked for its duration
- Idempotent creation through the idempotency ledger
- Already-applied commands replay the current snapshot instead of failing
- An audit event for every accepted change and a row-update event after commit

Commands never raise CaseError across the service boundary; they return a
CommandResult carrying either a snapshot or the error. Queries
(``list_*``, ``get_case_events``) raise CaseError directly.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from returnflow.db.models import ReturnCase
from returnflow.db.models.base import (
    ActorType,
    CaseEventType,
    CaseState,
    MerchantActionType,
    utcnow,
)
from returnflow.services.case_store import CaseStore
from returnflow.services.errors import (
    CaseClosedError,
    CaseError,
    CaseNotFoundError,
    CaseStoreUnavailableError,
    CaseValidationError,
    CollaboratorError,
    ParcelNotEligibleError,
    TransitionNotAllowedError,
)
from returnflow.services.events import CaseEventPublisher, CaseRowUpdate
from returnflow.services.idempotency import (
    DEFAULT_RETENTION_HOURS,
    IdempotencyLedger,
    payload_fingerprint,
)
from returnflow.services.permissions import (
    DEFAULT_DISPATCH_BLOCK_REASON,
    EXCHANGE_STATES,
    PermissionSet,
    blocked_reason,
    derive,
)
from returnflow.services.snapshot import CaseSnapshot, build_snapshot
from returnflow.services.validation import (
    build_create_command,
    normalize_block_reason,
    normalize_comment,
    normalize_parcel_id,
    normalize_track_number,
)

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from returnflow.db.models import CaseEvent, IdempotencyRecord
    from returnflow.services.parcels import (
        ExchangeParcelFactory,
        ExchangeParcelInfo,
        ParcelEligibility,
    )
    from returnflow.services.validation import CreateCaseCommand

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


@dataclass(frozen=True, slots=True)
class Actor:
    """Who issued a command, recorded on the audit event."""

    type: ActorType
    ref: str


CUSTOMER_ACTOR = Actor(ActorType.CUSTOMER, "customer")
SYSTEM_ACTOR = Actor(ActorType.SYSTEM, "system")
TRACKING_ACTOR = Actor(ActorType.SYSTEM, "parcel-tracking")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a case command.

    Attributes:
        snapshot: Authoritative case view after the command (None on failure).
        error: Typed error when the command was rejected.
        replayed: True when the command had already been applied and nothing
            was written.
        created: True when create_case inserted a new case.
    """

    snapshot: CaseSnapshot | None
    error: CaseError | None = None
    replayed: bool = False
    created: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls, snapshot: CaseSnapshot, *, replayed: bool = False, created: bool = False
    ) -> CommandResult:
        return cls(snapshot=snapshot, replayed=replayed, created=created)

    @classmethod
    def failure(cls, error: CaseError) -> CommandResult:
        return cls(snapshot=None, error=error)


@dataclass(slots=True)
class _Change:
    """An accepted mutation, described for the audit trail."""

    event_type: CaseEventType
    metadata: dict[str, Any] = field(default_factory=dict)
    # Exchange parcel created at tracking by this change, detached if it rolls back
    created_exchange_parcel_id: str | None = None


# apply(case, permissions, now) -> change, or None when already applied
_Apply = Callable[[ReturnCase, PermissionSet, "datetime"], Awaitable[_Change | None]]


class CaseLifecycleService:
    """Service for managing return case transitions.

    All state changes go through this service. It:
    1. Loads the case under a row lock, scoped to its parcel
    2. Rejects commands on closed cases
    3. Records an exchange parcel dispatch that tracking reports but no
       callback has delivered yet
    4. Derives permissions and replays already-applied commands
    5. Checks the guard permission for the command
    6. Applies the change, records an audit event and commits
    7. Publishes a row-level update and returns a fresh snapshot

    A change that created an exchange parcel at tracking but failed to commit
    detaches that parcel again.
    """

    # Command name -> PermissionSet field guarding it
    COMMAND_PERMISSIONS: ClassVar[dict[str, str]] = {
        "launch_exchange": "allow_launch_exchange",
        "create_exchange_parcel": "allow_create_exchange_parcel",
        "convert_to_return": "allow_convert_to_return",
        "close": "allow_close",
        "update_reverse_track": "allow_update_reverse_track",
        "confirm_receipt": "allow_confirm_receipt",
    }

    def __init__(
        self,
        session: AsyncSession,
        eligibility: ParcelEligibility,
        exchange_parcels: ExchangeParcelFactory,
        *,
        publisher: CaseEventPublisher | None = None,
        idempotency_retention_hours: int = DEFAULT_RETENTION_HOURS,
    ) -> None:
        """Initialize the lifecycle service.

        Args:
            session: SQLAlchemy async session; the service commits on it.
            eligibility: Parcel tracking eligibility check.
            exchange_parcels: Parcel tracking exchange parcel factory.
            publisher: Receives row updates after each commit.
            idempotency_retention_hours: Ledger retention for create keys.
        """
        self._session = session
        self._eligibility = eligibility
        self._exchange_parcels = exchange_parcels
        self._publisher = publisher or CaseEventPublisher()
        self._store = CaseStore(session)
        self._ledger = IdempotencyLedger(session, idempotency_retention_hours)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_case(
        self,
        parcel_id: str | int,
        *,
        reason: str | None,
        idempotency_key: str | None,
        is_exchange: bool = False,
        comment: str | None = None,
        reverse_track_number: str | None = None,
        requested_at: datetime | None = None,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Open a return or exchange case for a parcel.

        A repeated call with the same idempotency key and payload returns the
        case created by the first call.

        Returns:
            CommandResult with ``created=True`` for a new case, or
            ``replayed=True`` for an idempotent retry.
        """
        try:
            command = build_create_command(
                parcel_id,
                reason=reason,
                idempotency_key=idempotency_key,
                is_exchange=is_exchange,
                comment=comment,
                reverse_track_number=reverse_track_number,
                requested_at=requested_at,
            )
        except CaseValidationError as e:
            return self._reject("create", e, parcel_id=str(parcel_id))

        fingerprint = payload_fingerprint(command)
        try:
            existing = await self._ledger.lookup(command.idempotency_key)
            if existing is not None:
                return await self._replay_create(existing, fingerprint)

            if not await self._eligibility.can_register_return(command.parcel_id):
                raise ParcelNotEligibleError(
                    command.parcel_id, "Parcel is not eligible for a return right now"
                )
            if await self._store.find_active_for_parcel(command.parcel_id) is not None:
                raise ParcelNotEligibleError(
                    command.parcel_id, "Parcel already has an open return case"
                )

            case = self._new_case(command)
            self._store.add(case)
            self._ledger.record(case, fingerprint, case.created_at)
            self._store.add_event(
                case,
                CaseEventType.EVT_CREATED,
                from_state=None,
                actor_type=actor.type,
                actor_ref=actor.ref,
                event_time=case.created_at,
                event_metadata={"is_exchange": command.is_exchange},
            )
            await self._session.flush()
            snapshot = await self._snapshot(case)
            update = CaseRowUpdate.from_case(case)
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return await self._resolve_create_race(command, fingerprint)
        except CaseError as e:
            await self._session.rollback()
            return self._reject("create", e, parcel_id=command.parcel_id)
        except SQLAlchemyError as e:
            await self._session.rollback()
            return self._store_failure("create", e, parcel_id=command.parcel_id)

        logger.info(
            "Case created",
            extra={
                "case_id": str(snapshot.case_id),
                "parcel_id": command.parcel_id,
                "state": snapshot.state.value,
                "actor_ref": actor.ref,
            },
        )
        await self._publisher.publish(update)
        return CommandResult.success(snapshot, created=True)

    async def launch_exchange(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Turn an open return into an exchange."""

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.state in EXCHANGE_STATES:
                return None
            self._require(case, permissions, "launch_exchange")
            case.state = CaseState.OPEN_EXCHANGE
            case.decision_at = now
            return _Change(CaseEventType.EVT_EXCHANGE_LAUNCHED)

        return await self._mutate("launch_exchange", parcel_id, case_id, apply, actor)

    async def create_exchange_parcel(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Create the replacement parcel through parcel tracking.

        Receipt of the returned goods is not required here; the snapshot
        carries an advisory warning instead.
        """

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.exchange_parcel_id is not None:
                return None
            self._require(case, permissions, "create_exchange_parcel")
            ref = await self._exchange_parcels.create(case.parcel_id)
            case.exchange_parcel_id = ref.id
            case.state = CaseState.EXCHANGE_IN_PROGRESS
            return _Change(
                CaseEventType.EVT_EXCHANGE_PARCEL_CREATED,
                {"exchange_parcel_id": ref.id, "exchange_parcel_number": ref.number},
                created_exchange_parcel_id=ref.id,
            )

        return await self._mutate("create_exchange_parcel", parcel_id, case_id, apply, actor)

    async def convert_to_return(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Revert an exchange to a plain return, detaching any exchange parcel."""

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.state == CaseState.OPEN_RETURN:
                return None
            self._require(case, permissions, "convert_to_return")
            metadata: dict[str, Any] = {}
            if case.exchange_parcel_id is not None:
                await self._exchange_parcels.detach(case.exchange_parcel_id)
                metadata["detached_exchange_parcel_id"] = case.exchange_parcel_id
            case.state = CaseState.OPEN_RETURN
            case.exchange_parcel_id = None
            case.decision_at = None
            case.exchange_requested = False
            resolved = await self._store.resolve_pending_actions(case.case_id, now)
            if resolved:
                metadata["resolved_merchant_actions"] = resolved
            return _Change(CaseEventType.EVT_CONVERTED_TO_RETURN, metadata)

        return await self._mutate("convert_to_return", parcel_id, case_id, apply, actor)

    async def close_case(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Close the case. Closed is terminal."""

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            self._require(case, permissions, "close")
            case.state = CaseState.CLOSED
            case.closed_at = now
            await self._store.resolve_pending_actions(case.case_id, now)
            return _Change(CaseEventType.EVT_CLOSED)

        return await self._mutate("close", parcel_id, case_id, apply, actor)

    async def update_reverse_track(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        reverse_track_number: str | None,
        comment: str | None = None,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Set the return track number and optionally amend the comment.

        A blank track number clears it. ``comment=None`` leaves the comment
        unchanged; a blank comment clears it.
        """
        try:
            track = normalize_track_number(reverse_track_number)
            new_comment = normalize_comment(comment) if comment is not None else None
        except CaseValidationError as e:
            return self._reject("update_reverse_track", e, parcel_id=str(parcel_id))

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            target_comment = new_comment if comment is not None else case.comment
            if case.reverse_track_number == track and case.comment == target_comment:
                return None
            self._require(case, permissions, "update_reverse_track")
            metadata = {
                "previous_track_number": case.reverse_track_number,
                "track_number": track,
                "comment_changed": case.comment != target_comment,
            }
            case.reverse_track_number = track
            case.comment = target_comment
            return _Change(CaseEventType.EVT_REVERSE_TRACK_UPDATED, metadata)

        return await self._mutate("update_reverse_track", parcel_id, case_id, apply, actor)

    async def confirm_receipt(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Record that the returned goods physically arrived. One-way."""

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.receipt_confirmed:
                return None
            self._require(case, permissions, "confirm_receipt")
            case.receipt_confirmed = True
            case.receipt_confirmed_at = now
            return _Change(CaseEventType.EVT_RECEIPT_CONFIRMED)

        return await self._mutate("confirm_receipt", parcel_id, case_id, apply, actor)

    async def record_exchange_dispatch(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        reason: str | None = None,
        dispatched_at: datetime | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> CommandResult:
        """Record that tracking reports the exchange parcel as shipped.

        From then on the exchange can no longer be converted back to a
        return automatically, and ``reason`` (or a default text) is shown
        as the blocking reason.
        """
        block = normalize_block_reason(reason) or DEFAULT_DISPATCH_BLOCK_REASON

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.exchange_parcel_id is None:
                raise TransitionNotAllowedError(
                    case.case_id,
                    "record_exchange_dispatch",
                    "exchange_parcel_linked",
                    "No exchange parcel is linked to this case",
                )
            if case.exchange_dispatched_at is not None and case.cancel_unavailable_reason == block:
                return None
            case.exchange_dispatched_at = case.exchange_dispatched_at or dispatched_at or now
            case.cancel_unavailable_reason = block
            return _Change(
                CaseEventType.EVT_EXCHANGE_DISPATCHED,
                {"exchange_parcel_id": case.exchange_parcel_id, "reason": block},
            )

        return await self._mutate("record_exchange_dispatch", parcel_id, case_id, apply, actor)

    async def request_merchant_action(
        self,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        *,
        action: MerchantActionType | str,
        actor: Actor = CUSTOMER_ACTOR,
    ) -> CommandResult:
        """Ask the store to reverse an exchange by hand.

        At most one unprocessed request exists per case and action; a repeat
        returns the current snapshot.
        """
        try:
            action = MerchantActionType(action)
        except ValueError:
            return self._reject(
                "request_merchant_action",
                CaseValidationError(f"Unknown merchant action: {action}", field="action"),
                parcel_id=str(parcel_id),
            )

        async def apply(
            case: ReturnCase, permissions: PermissionSet, now: datetime
        ) -> _Change | None:
            if case.state not in EXCHANGE_STATES:
                raise TransitionNotAllowedError(
                    case.case_id,
                    "request_merchant_action",
                    "exchange_active",
                    "Store actions can only be requested for an exchange",
                )
            if await self._store.find_pending_action(case.case_id, action) is not None:
                return None
            self._store.add_action_request(case, action, actor.ref)
            return _Change(CaseEventType.EVT_MERCHANT_ACTION_REQUESTED, {"action": action.value})

        return await self._mutate("request_merchant_action", parcel_id, case_id, apply, actor)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_case(self, parcel_id: str | int, case_id: uuid.UUID | str) -> CommandResult:
        """Return the current snapshot of a case."""
        try:
            parcel = normalize_parcel_id(parcel_id)
            case = await self._store.get(parcel, case_id)
            if case is None:
                raise CaseNotFoundError(parcel, case_id)
            await self._record_tracked_dispatch(case)
            return CommandResult.success(await self._snapshot(case))
        except CaseError as e:
            return self._reject("get", e, parcel_id=str(parcel_id))
        except SQLAlchemyError as e:
            await self._session.rollback()
            return self._store_failure("get", e, parcel_id=str(parcel_id))

    async def list_parcel_cases(self, parcel_id: str | int) -> list[CaseSnapshot]:
        """Every case of a parcel, open and closed, newest first."""
        parcel = normalize_parcel_id(parcel_id)
        cases = await self._store.list_for_parcel(parcel)
        return [await self._snapshot(case) for case in cases]

    async def list_open_cases(
        self,
        state: CaseState | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CaseSnapshot]:
        """Non-closed cases awaiting action, oldest request first.

        Raises:
            CaseValidationError: Bad state filter or paging values.
        """
        if state is not None:
            try:
                state = CaseState(state)
            except ValueError:
                raise CaseValidationError(f"Unknown case state: {state}", field="state") from None
            if state == CaseState.CLOSED:
                raise CaseValidationError("Closed cases are not open", field="state")
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise CaseValidationError(
                f"Limit must be between 1 and {MAX_LIST_LIMIT}", field="limit"
            )
        if offset < 0:
            raise CaseValidationError("Offset cannot be negative", field="offset")

        cases = await self._store.list_open(state, limit, offset)
        return [await self._snapshot(case) for case in cases]

    async def get_case_events(
        self, parcel_id: str | int, case_id: uuid.UUID | str
    ) -> list[CaseEvent]:
        """Audit trail of a case, oldest first.

        Raises:
            CaseNotFoundError: No such case for the parcel.
        """
        parcel = normalize_parcel_id(parcel_id)
        case = await self._store.get(parcel, case_id)
        if case is None:
            raise CaseNotFoundError(parcel, case_id)
        return await self._store.events_for_case(case.case_id)

    async def purge_expired_idempotency_records(self, now: datetime | None = None) -> int:
        """Remove idempotency records past retention and commit."""
        removed = await self._ledger.purge_expired(now)
        await self._session.commit()
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        command: str,
        parcel_id: str | int,
        case_id: uuid.UUID | str,
        apply: _Apply,
        actor: Actor,
    ) -> CommandResult:
        """Run one command inside a single transaction."""
        change: _Change | None = None
        try:
            parcel = normalize_parcel_id(parcel_id)
            case = await self._load_open_case(parcel, case_id)
            if await self._record_tracked_dispatch(case):
                # Dispatch was committed separately; lock the row again
                case = await self._load_open_case(parcel, case_id)

            from_state = case.state
            now = utcnow()
            change = await apply(case, derive(case), now)

            if change is None:
                snapshot = await self._snapshot(case)
                # Nothing written; ends the transaction and releases the lock
                await self._session.commit()
                logger.info(
                    "Case command already applied",
                    extra={"case_id": str(case.case_id), "command": command},
                )
                return CommandResult.success(snapshot, replayed=True)

            case.updated_at = now
            self._store.add_event(
                case,
                change.event_type,
                from_state=from_state,
                actor_type=actor.type,
                actor_ref=actor.ref,
                event_time=now,
                event_metadata=change.metadata or None,
            )
            await self._session.flush()
            snapshot = await self._snapshot(case)
            update = CaseRowUpdate.from_case(case)
            await self._session.commit()
        except CaseError as e:
            await self._session.rollback()
            await self._compensate(change, command)
            return self._reject(command, e, parcel_id=str(parcel_id), case_id=str(case_id))
        except SQLAlchemyError as e:
            await self._session.rollback()
            await self._compensate(change, command)
            return self._store_failure(command, e, parcel_id=str(parcel_id), case_id=str(case_id))

        logger.info(
            "Case transition completed",
            extra={
                "case_id": str(snapshot.case_id),
                "parcel_id": snapshot.parcel_id,
                "command": command,
                "from_state": from_state.value,
                "to_state": snapshot.state.value,
                "version": snapshot.version,
                "actor_ref": actor.ref,
            },
        )
        await self._publisher.publish(update)
        return CommandResult.success(snapshot)

    def _require(self, case: ReturnCase, permissions: PermissionSet, command: str) -> None:
        """Raise TransitionNotAllowedError if the command's guard is false."""
        permission = self.COMMAND_PERMISSIONS[command]
        if getattr(permissions, permission):
            return
        raise TransitionNotAllowedError(
            case.case_id,
            command,
            permission,
            blocked_reason(case, permission),
        )

    def _new_case(self, command: CreateCaseCommand) -> ReturnCase:
        now = utcnow()
        return ReturnCase(
            case_id=uuid.uuid4(),
            parcel_id=command.parcel_id,
            state=CaseState.OPEN_EXCHANGE if command.is_exchange else CaseState.OPEN_RETURN,
            reason=command.reason,
            comment=command.comment,
            requested_at=command.requested_at,
            decision_at=now if command.is_exchange else None,
            reverse_track_number=command.reverse_track_number,
            receipt_confirmed=False,
            exchange_requested=command.is_exchange,
            idempotency_key=command.idempotency_key,
            created_at=now,
            updated_at=now,
        )

    async def _replay_create(self, record: IdempotencyRecord, fingerprint: str) -> CommandResult:
        """Return the case an idempotency key already produced."""
        self._ledger.check_replay(record, fingerprint)
        case = await self._store.get_by_id(record.case_id)
        if case is None:
            raise CaseNotFoundError(record.parcel_id, record.case_id)
        snapshot = await self._snapshot(case)
        await self._session.commit()
        logger.info(
            "Create replayed from idempotency key",
            extra={"case_id": str(case.case_id), "idempotency_key": record.key},
        )
        return CommandResult.success(snapshot, replayed=True)

    async def _resolve_create_race(
        self, command: CreateCaseCommand, fingerprint: str
    ) -> CommandResult:
        """Work out which constraint a concurrent create tripped.

        A committed record for our key means a retry of the same request won
        the race. Otherwise another key opened a case on the parcel first.
        """
        try:
            record = await self._ledger.lookup(command.idempotency_key)
            if record is not None:
                return await self._replay_create(record, fingerprint)
        except CaseError as e:
            await self._session.rollback()
            return self._reject("create", e, parcel_id=command.parcel_id)
        except SQLAlchemyError as e:
            await self._session.rollback()
            return self._store_failure("create", e, parcel_id=command.parcel_id)

        return self._reject(
            "create",
            ParcelNotEligibleError(command.parcel_id, "Parcel already has an open return case"),
            parcel_id=command.parcel_id,
        )

    async def _load_open_case(self, parcel_id: str, case_id: uuid.UUID | str) -> ReturnCase:
        case = await self._store.load_for_update(parcel_id, case_id)
        if case is None:
            raise CaseNotFoundError(parcel_id, case_id)
        if case.is_closed:
            raise CaseClosedError(case.case_id)
        return case

    async def _record_tracked_dispatch(self, case: ReturnCase) -> bool:
        """Record a shipment tracking already reports but no callback has delivered.

        The dispatch fact is committed in its own transaction and published as
        a row update.

        Returns:
            True when the case row was changed and committed.
        """
        if (
            case.state not in EXCHANGE_STATES
            or case.exchange_parcel_id is None
            or case.exchange_dispatched_at is not None
        ):
            return False
        info = await self._describe_exchange_parcel(case)
        if info is None or not info.dispatched:
            return False

        now = utcnow()
        case.exchange_dispatched_at = now
        case.cancel_unavailable_reason = (
            case.cancel_unavailable_reason or DEFAULT_DISPATCH_BLOCK_REASON
        )
        case.updated_at = now
        self._store.add_event(
            case,
            CaseEventType.EVT_EXCHANGE_DISPATCHED,
            from_state=case.state,
            actor_type=TRACKING_ACTOR.type,
            actor_ref=TRACKING_ACTOR.ref,
            event_time=now,
            event_metadata={
                "exchange_parcel_id": case.exchange_parcel_id,
                "exchange_parcel_number": info.number,
                "reason": case.cancel_unavailable_reason,
            },
        )
        await self._session.flush()
        update = CaseRowUpdate.from_case(case)
        await self._session.commit()
        logger.info(
            "Exchange parcel dispatch picked up from tracking",
            extra={
                "case_id": str(case.case_id),
                "exchange_parcel_id": case.exchange_parcel_id,
                "version": case.version,
            },
        )
        await self._publisher.publish(update)
        return True

    async def _compensate(self, change: _Change | None, command: str) -> None:
        """Undo collaborator side effects of a change that was not committed."""
        if change is None or change.created_exchange_parcel_id is None:
            return
        exchange_parcel_id = change.created_exchange_parcel_id
        try:
            await self._exchange_parcels.detach(exchange_parcel_id)
        except CollaboratorError as e:
            logger.error(
                "Could not detach uncommitted exchange parcel",
                extra={
                    "command": command,
                    "exchange_parcel_id": exchange_parcel_id,
                    "error": e.message,
                },
            )
            return
        logger.warning(
            "Detached exchange parcel of a rolled back command",
            extra={"command": command, "exchange_parcel_id": exchange_parcel_id},
        )

    async def _snapshot(self, case: ReturnCase) -> CaseSnapshot:
        exchange_parcel = await self._describe_exchange_parcel(case)
        pending = await self._store.pending_action_requests(case.case_id)
        return build_snapshot(case, derive(case), exchange_parcel, pending)

    async def _describe_exchange_parcel(self, case: ReturnCase) -> ExchangeParcelInfo | None:
        if case.exchange_parcel_id is None:
            return None
        try:
            return await self._exchange_parcels.describe(case.exchange_parcel_id)
        except CollaboratorError as e:
            # Snapshot still renders; it carries a warning instead of details
            logger.warning(
                "Could not describe exchange parcel",
                extra={
                    "case_id": str(case.case_id),
                    "exchange_parcel_id": case.exchange_parcel_id,
                    "error": e.message,
                },
            )
            return None

    def _reject(self, command: str, error: CaseError, **context: str) -> CommandResult:
        logger.warning(
            "Case command rejected",
            extra={"command": command, "error_code": error.code, "reason": error.message, **context},
        )
        return CommandResult.failure(error)

    def _store_failure(
        self, command: str, error: Exception, **context: str
    ) -> CommandResult:
        logger.exception(
            "Case store failure",
            extra={"command": command, "error_type": type(error).__name__, **context},
        )
        if isinstance(error, StaleDataError):
            message = "The case was changed by a concurrent request; retry"
        else:
            message = "Case storage is temporarily unavailable; retry"
        return CommandResult.failure(CaseStoreUnavailableError(message))
