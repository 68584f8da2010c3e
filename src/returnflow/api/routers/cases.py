"""Return case API router.

One set of endpoints serves every UI surface (detail modal, list row,
Telegram bot). Each command returns the full case snapshot; callers render
it and never patch case state themselves. The X-Caller-Surface header is
recorded on the audit trail and has no other effect.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Header, Query, Response, status

from returnflow.api.dependencies import CustomerActor, LifecycleService, SystemActor
from returnflow.api.middleware.errors import ValidationAPIError
from returnflow.api.schemas.cases import (
    CaseEventListResponse,
    CaseEventResponse,
    CaseListResponse,
    CaseResponse,
    CreateCaseRequest,
    ExchangeDispatchRequest,
    MerchantActionRequest,
    UpdateReverseTrackRequest,
)
from returnflow.services.lifecycle import CommandResult

router = APIRouter(
    tags=["return-cases"],
    responses={
        404: {"description": "Parcel or case not found"},
        409: {"description": "Command not allowed in the current case state"},
        503: {"description": "Temporarily unavailable; safe to retry"},
    },
)

CASE_PATH = "/parcels/{parcel_id}/return-cases/{case_id}"


def _snapshot_or_raise(result: CommandResult) -> CaseResponse:
    """Return the snapshot, or raise the error for ErrorHandlerMiddleware."""
    if result.error is not None:
        raise result.error
    return CaseResponse.from_snapshot(result.snapshot)


# -----------------------------------------------------------------------------
# Parcel-scoped collection
# -----------------------------------------------------------------------------


@router.post(
    "/parcels/{parcel_id}/return-cases",
    response_model=CaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a return or exchange case",
    description=(
        "Creates a case for the parcel. Retrying with the same idempotency key and "
        "payload returns the original case with status 200."
    ),
)
async def create_case(
    parcel_id: str,
    body: CreateCaseRequest,
    response: Response,
    service: LifecycleService,
    actor: CustomerActor,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> CaseResponse:
    if idempotency_key and body.idempotency_key and idempotency_key != body.idempotency_key:
        raise ValidationAPIError(
            "Idempotency-Key header and body idempotency_key differ",
            detail={"field": "idempotency_key"},
        )

    result = await service.create_case(
        parcel_id,
        reason=body.reason,
        idempotency_key=body.idempotency_key or idempotency_key,
        is_exchange=body.is_exchange,
        comment=body.comment,
        reverse_track_number=body.reverse_track_number,
        requested_at=body.requested_at,
        actor=actor,
    )
    snapshot = _snapshot_or_raise(result)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return snapshot


@router.get(
    "/parcels/{parcel_id}/return-cases",
    response_model=CaseListResponse,
    summary="List a parcel's cases",
    description="Every case of the parcel, open and closed, newest first.",
)
async def list_parcel_cases(parcel_id: str, service: LifecycleService) -> CaseListResponse:
    snapshots = await service.list_parcel_cases(parcel_id)
    return CaseListResponse(
        cases=[CaseResponse.from_snapshot(s) for s in snapshots],
        count=len(snapshots),
    )


@router.get(
    "/return-cases/open",
    response_model=CaseListResponse,
    summary="List cases requiring action",
)
async def list_open_cases(
    service: LifecycleService,
    state: Annotated[str | None, Query(description="Filter by case state")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> CaseListResponse:
    snapshots = await service.list_open_cases(state=state, limit=limit, offset=offset)
    return CaseListResponse(
        cases=[CaseResponse.from_snapshot(s) for s in snapshots],
        count=len(snapshots),
    )


# -----------------------------------------------------------------------------
# Single case
# -----------------------------------------------------------------------------


@router.get(CASE_PATH, response_model=CaseResponse, summary="Get a case snapshot")
async def get_case(parcel_id: str, case_id: str, service: LifecycleService) -> CaseResponse:
    return _snapshot_or_raise(await service.get_case(parcel_id, case_id))


@router.get(
    f"{CASE_PATH}/events",
    response_model=CaseEventListResponse,
    summary="Get a case's audit trail",
)
async def get_case_events(
    parcel_id: str, case_id: str, service: LifecycleService
) -> CaseEventListResponse:
    events = await service.get_case_events(parcel_id, case_id)
    return CaseEventListResponse(
        case_id=case_id,
        events=[CaseEventResponse.from_event(e) for e in events],
    )


@router.post(
    f"{CASE_PATH}/launch-exchange",
    response_model=CaseResponse,
    summary="Turn a return into an exchange",
)
async def launch_exchange(
    parcel_id: str, case_id: str, service: LifecycleService, actor: CustomerActor
) -> CaseResponse:
    return _snapshot_or_raise(await service.launch_exchange(parcel_id, case_id, actor=actor))


@router.post(
    f"{CASE_PATH}/exchange-parcel",
    response_model=CaseResponse,
    summary="Create the exchange parcel",
)
async def create_exchange_parcel(
    parcel_id: str, case_id: str, service: LifecycleService, actor: CustomerActor
) -> CaseResponse:
    return _snapshot_or_raise(
        await service.create_exchange_parcel(parcel_id, case_id, actor=actor)
    )


@router.post(
    f"{CASE_PATH}/convert-to-return",
    response_model=CaseResponse,
    summary="Convert an exchange back to a return",
)
async def convert_to_return(
    parcel_id: str, case_id: str, service: LifecycleService, actor: CustomerActor
) -> CaseResponse:
    return _snapshot_or_raise(await service.convert_to_return(parcel_id, case_id, actor=actor))


@router.post(f"{CASE_PATH}/close", response_model=CaseResponse, summary="Close a case")
async def close_case(
    parcel_id: str, case_id: str, service: LifecycleService, actor: CustomerActor
) -> CaseResponse:
    return _snapshot_or_raise(await service.close_case(parcel_id, case_id, actor=actor))


@router.patch(
    f"{CASE_PATH}/reverse-track",
    response_model=CaseResponse,
    summary="Set the return track number",
)
async def update_reverse_track(
    parcel_id: str,
    case_id: str,
    body: UpdateReverseTrackRequest,
    service: LifecycleService,
    actor: CustomerActor,
) -> CaseResponse:
    result = await service.update_reverse_track(
        parcel_id,
        case_id,
        reverse_track_number=body.reverse_track_number,
        comment=body.comment,
        actor=actor,
    )
    return _snapshot_or_raise(result)


@router.post(
    f"{CASE_PATH}/confirm-receipt",
    response_model=CaseResponse,
    summary="Confirm the returned goods arrived",
)
async def confirm_receipt(
    parcel_id: str, case_id: str, service: LifecycleService, actor: CustomerActor
) -> CaseResponse:
    return _snapshot_or_raise(await service.confirm_receipt(parcel_id, case_id, actor=actor))


@router.post(
    f"{CASE_PATH}/exchange-dispatch",
    response_model=CaseResponse,
    summary="Record that the exchange parcel was dispatched",
    description="Called by parcel tracking when the exchange parcel leaves the store.",
)
async def record_exchange_dispatch(
    parcel_id: str,
    case_id: str,
    body: ExchangeDispatchRequest,
    service: LifecycleService,
    actor: SystemActor,
) -> CaseResponse:
    result = await service.record_exchange_dispatch(
        parcel_id,
        case_id,
        reason=body.reason,
        dispatched_at=body.dispatched_at,
        actor=actor,
    )
    return _snapshot_or_raise(result)


@router.post(
    f"{CASE_PATH}/merchant-actions",
    response_model=CaseResponse,
    summary="Ask the store to reverse an exchange",
)
async def request_merchant_action(
    parcel_id: str,
    case_id: str,
    body: MerchantActionRequest,
    service: LifecycleService,
    actor: CustomerActor,
) -> CaseResponse:
    result = await service.request_merchant_action(
        parcel_id, case_id, action=body.action, actor=actor
    )
    return _snapshot_or_raise(result)
