"""Row-level partial-update events.

After a command commits, the service publishes a CaseRowUpdate carrying
only the fields a list view needs to patch its row. Subscribers are plain
callables (sync or async); a failing subscriber is logged and never
affects the command that triggered it.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from uuid import UUID

    from returnflow.db.models import ReturnCase

logger = logging.getLogger(__name__)

Subscriber = Callable[["CaseRowUpdate"], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class CaseRowUpdate:
    """Partial update for one case row, ordered by ``version``."""

    parcel_id: str
    case_id: UUID
    version: int
    state: str | None = None
    reverse_track_number: str | None = None
    comment: str | None = None
    receipt_confirmed: bool | None = None
    exchange_parcel_id: str | None = None

    @classmethod
    def from_case(cls, case: ReturnCase) -> CaseRowUpdate:
        return cls(
            parcel_id=case.parcel_id,
            case_id=case.case_id,
            version=case.version,
            state=case.state.value,
            reverse_track_number=case.reverse_track_number,
            comment=case.comment,
            receipt_confirmed=case.receipt_confirmed,
            exchange_parcel_id=case.exchange_parcel_id,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["case_id"] = str(self.case_id)
        return data


class CaseEventPublisher:
    """In-process fan-out of row updates to registered subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, update: CaseRowUpdate) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(update)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Case update subscriber failed",
                    extra={"case_id": str(update.case_id), "version": update.version},
                )
