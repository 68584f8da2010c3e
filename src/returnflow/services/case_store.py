"""Case persistence queries.

Commands load a case with ``load_for_update`` so concurrent commands on the
same case serialise on the row lock. Relationships are never loaded lazily;
every collection is fetched with an explicit query.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import select

from returnflow.db.models import CaseActionRequest, CaseEvent, ReturnCase
from returnflow.db.models.base import ActorType, CaseState, MerchantActionType, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from returnflow.db.models.base import CaseEventType

logger = logging.getLogger(__name__)


def coerce_case_id(case_id: uuid.UUID | str) -> uuid.UUID | None:
    """Parse a case id, returning None for malformed values."""
    if isinstance(case_id, uuid.UUID):
        return case_id
    try:
        return uuid.UUID(str(case_id))
    except ValueError:
        return None


class CaseStore:
    """Thin query layer over return_cases and its child tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, parcel_id: str, case_id: uuid.UUID | str) -> ReturnCase | None:
        """Fetch a case by id, scoped to its parcel."""
        return await self._fetch(parcel_id, case_id, for_update=False)

    async def load_for_update(
        self, parcel_id: str, case_id: uuid.UUID | str
    ) -> ReturnCase | None:
        """Fetch a case and lock its row until the transaction ends."""
        return await self._fetch(parcel_id, case_id, for_update=True)

    async def _fetch(
        self, parcel_id: str, case_id: uuid.UUID | str, *, for_update: bool
    ) -> ReturnCase | None:
        parsed = coerce_case_id(case_id)
        if parsed is None:
            return None
        query = select(ReturnCase).where(
            ReturnCase.case_id == parsed,
            ReturnCase.parcel_id == parcel_id,
        )
        if for_update:
            # populate_existing refreshes an identity-map copy with the locked row
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_id(self, case_id: uuid.UUID) -> ReturnCase | None:
        return await self._session.get(ReturnCase, case_id)

    async def find_active_for_parcel(self, parcel_id: str) -> ReturnCase | None:
        """Return the parcel's non-closed case, if any."""
        query = select(ReturnCase).where(
            ReturnCase.parcel_id == parcel_id,
            ReturnCase.state != CaseState.CLOSED,
        )
        result = await self._session.execute(query)
        return result.scalars().first()

    async def list_for_parcel(self, parcel_id: str) -> list[ReturnCase]:
        """All cases of a parcel, newest first."""
        query = (
            select(ReturnCase)
            .where(ReturnCase.parcel_id == parcel_id)
            .order_by(ReturnCase.created_at.desc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_open(
        self,
        state: CaseState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReturnCase]:
        """Non-closed cases, oldest request first."""
        query = select(ReturnCase).where(ReturnCase.state != CaseState.CLOSED)
        if state is not None:
            query = query.where(ReturnCase.state == state)
        query = query.order_by(ReturnCase.requested_at.asc()).limit(limit).offset(offset)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    def add(self, case: ReturnCase) -> None:
        self._session.add(case)

    def add_event(
        self,
        case: ReturnCase,
        event_type: CaseEventType,
        *,
        from_state: CaseState | None,
        actor_type: ActorType,
        actor_ref: str,
        event_time: datetime | None = None,
        event_metadata: dict | None = None,
    ) -> CaseEvent:
        """Stage an audit event for an accepted command."""
        event = CaseEvent(
            case=case,
            case_id=case.case_id,
            event_type=event_type,
            event_time=event_time or utcnow(),
            from_state=from_state,
            to_state=case.state,
            actor_type=actor_type,
            actor_ref=actor_ref,
            event_metadata=event_metadata,
        )
        self._session.add(event)
        return event

    async def events_for_case(self, case_id: uuid.UUID) -> list[CaseEvent]:
        query = (
            select(CaseEvent)
            .where(CaseEvent.case_id == case_id)
            .order_by(CaseEvent.event_time.asc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def pending_action_requests(self, case_id: uuid.UUID) -> list[CaseActionRequest]:
        """Unprocessed merchant action requests for a case."""
        query = (
            select(CaseActionRequest)
            .where(
                CaseActionRequest.case_id == case_id,
                CaseActionRequest.processed_at.is_(None),
            )
            .order_by(CaseActionRequest.created_at.asc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def find_pending_action(
        self, case_id: uuid.UUID, action: MerchantActionType
    ) -> CaseActionRequest | None:
        query = select(CaseActionRequest).where(
            CaseActionRequest.case_id == case_id,
            CaseActionRequest.action == action,
            CaseActionRequest.processed_at.is_(None),
        )
        result = await self._session.execute(query)
        return result.scalars().first()

    def add_action_request(
        self,
        case: ReturnCase,
        action: MerchantActionType,
        requested_by: str,
    ) -> CaseActionRequest:
        request = CaseActionRequest(
            case=case,
            case_id=case.case_id,
            action=action,
            requested_by=requested_by,
            created_at=utcnow(),
        )
        self._session.add(request)
        return request

    async def resolve_pending_actions(self, case_id: uuid.UUID, now: datetime) -> int:
        """Mark every pending merchant request of a case as processed."""
        pending = await self.pending_action_requests(case_id)
        for request in pending:
            request.processed_at = now
        if pending:
            logger.debug(
                "Resolved pending merchant actions",
                extra={"case_id": str(case_id), "count": len(pending)},
            )
        return len(pending)
