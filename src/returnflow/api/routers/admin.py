"""Operational API router.

Retention sweeps for the idempotency ledger. Expired records are also
dropped lazily when their key is looked up; this endpoint lets a scheduler
(cron, Kubernetes CronJob) clear the rest.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from returnflow.api.dependencies import LifecycleService
from returnflow.api.schemas.admin import IdempotencyPurgeResponse
from returnflow.db.models.base import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/idempotency-records/purge",
    response_model=IdempotencyPurgeResponse,
    summary="Delete idempotency records past retention",
)
async def purge_idempotency_records(service: LifecycleService) -> IdempotencyPurgeResponse:
    now = utcnow()
    removed = await service.purge_expired_idempotency_records(now)
    logger.info("Idempotency ledger purged", extra={"removed": removed})
    return IdempotencyPurgeResponse(removed=removed, purged_at=now)
