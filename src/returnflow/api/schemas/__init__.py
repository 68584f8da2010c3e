"""Pydantic schemas for the returnflow API."""

from returnflow.api.schemas.cases import (
    CaseEventListResponse,
    CaseEventResponse,
    CaseListResponse,
    CaseResponse,
    CreateCaseRequest,
    ExchangeDispatchRequest,
    ExchangeParcelResponse,
    MerchantActionRequest,
    PendingMerchantActionResponse,
    PermissionsResponse,
    UpdateReverseTrackRequest,
)

__all__ = [
    "CaseEventListResponse",
    "CaseEventResponse",
    "CaseListResponse",
    "CaseResponse",
    "CreateCaseRequest",
    "ExchangeDispatchRequest",
    "ExchangeParcelResponse",
    "MerchantActionRequest",
    "PendingMerchantActionResponse",
    "PermissionsResponse",
    "UpdateReverseTrackRequest",
]
