"""Pydantic schemas for operational endpoints."""

from __future__ import annotations

# NOTE: datetime must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, Field


class IdempotencyPurgeResponse(BaseModel):
    """Result of an idempotency ledger retention sweep."""

    removed: int = Field(..., description="Number of expired records deleted")
    purged_at: datetime
