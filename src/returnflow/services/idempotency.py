"""Idempotency ledger for case creation.

A create request carries a client-generated key. The first request with a
key inserts an IdempotencyRecord next to the new case in the same
transaction; later requests with the same key either replay that case
(identical payload) or are rejected (different payload).

Records expire after ``retention_hours`` (never less than 24h) and are
removed by ``purge_expired``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from returnflow.core.config import MIN_IDEMPOTENCY_RETENTION_HOURS
from returnflow.db.models import IdempotencyRecord
from returnflow.db.models.base import utcnow
from returnflow.services.errors import IdempotencyConflictError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from returnflow.db.models import ReturnCase
    from returnflow.services.validation import CreateCaseCommand

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_HOURS = 72


def payload_fingerprint(command: CreateCaseCommand) -> str:
    """SHA-256 over the material fields of a create request.

    ``requested_at`` is left out: it defaults to the server clock, so two
    retries of the same request would otherwise never match.
    """
    material = {
        "parcel_id": command.parcel_id,
        "reason": command.reason,
        "comment": command.comment,
        "reverse_track_number": command.reverse_track_number,
        "is_exchange": command.is_exchange,
    }
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IdempotencyLedger:
    """Key -> case mapping stored alongside cases."""

    def __init__(
        self,
        session: AsyncSession,
        retention_hours: int = DEFAULT_RETENTION_HOURS,
    ) -> None:
        self._session = session
        self._retention = timedelta(hours=max(retention_hours, MIN_IDEMPOTENCY_RETENTION_HOURS))

    @property
    def retention(self) -> timedelta:
        return self._retention

    async def lookup(self, key: str, now: datetime | None = None) -> IdempotencyRecord | None:
        """Return the live record for ``key``.

        An expired record still in the table is deleted so the key can be
        reused by the caller's insert.
        """
        record = await self._session.get(IdempotencyRecord, key)
        if record is None:
            return None
        if record.expires_at <= (now or utcnow()):
            logger.debug("Dropping expired idempotency record", extra={"idempotency_key": key})
            await self._session.delete(record)
            await self._session.flush()
            return None
        return record

    def check_replay(self, record: IdempotencyRecord, fingerprint: str) -> None:
        """Raise IdempotencyConflictError unless the payload matches the original."""
        if record.payload_fingerprint != fingerprint:
            logger.warning(
                "Idempotency key reused with a different payload",
                extra={"idempotency_key": record.key, "case_id": str(record.case_id)},
            )
            raise IdempotencyConflictError(record.key, record.case_id)

    def record(
        self,
        case: ReturnCase,
        fingerprint: str,
        now: datetime | None = None,
    ) -> IdempotencyRecord:
        """Stage a record for ``case`` in the current transaction."""
        now = now or utcnow()
        record = IdempotencyRecord(
            key=case.idempotency_key,
            case=case,
            case_id=case.case_id,
            parcel_id=case.parcel_id,
            payload_fingerprint=fingerprint,
            created_at=now,
            expires_at=now + self._retention,
        )
        self._session.add(record)
        return record

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records past their expiry.

        Returns:
            Number of records removed.
        """
        now = now or utcnow()
        expired = (
            await self._session.execute(
                select(IdempotencyRecord.key).where(IdempotencyRecord.expires_at <= now)
            )
        ).scalars().all()
        if not expired:
            return 0
        await self._session.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.key.in_(expired))
        )
        logger.info("Purged expired idempotency records", extra={"count": len(expired)})
        return len(expired)
