"""SQLAlchemy ORM models for returnflow.

This package contains all database models organized by domain:
- base: Common metadata, column types, and enums
- cases: Return cases, case audit events, merchant action requests
- idempotency: Idempotency ledger for case creation
"""

from returnflow.db.models.base import Base, metadata
from returnflow.db.models.cases import CaseActionRequest, CaseEvent, ReturnCase
from returnflow.db.models.idempotency import IdempotencyRecord

__all__ = [
    "Base",
    "CaseActionRequest",
    "CaseEvent",
    "IdempotencyRecord",
    "ReturnCase",
    "metadata",
]
