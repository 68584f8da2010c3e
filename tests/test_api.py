"""Tests for the returnflow API.

Tests cover:
- App factory (create_app) and health endpoint
- Request ID middleware
- Error handling middleware and status mapping
- Return case endpoints end to end against SQLite
- Idempotency ledger purge endpoint
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from returnflow.api import create_app
from returnflow.api.middleware.errors import (
    STATUS_BY_CODE,
    APIError,
    ValidationAPIError,
    build_error_response,
)
from returnflow.api.middleware.request_id import REQUEST_ID_HEADER, get_request_id
from returnflow.services.errors import (
    CaseStoreUnavailableError,
    CollaboratorUnavailableError,
    IdempotencyConflictError,
)
from tests.factories import create_case_payload

CASES_URL = "/api/parcels/12/return-cases"


async def create_case(client: AsyncClient, **kwargs) -> dict:
    response = await client.post(CASES_URL, json=create_case_payload(**kwargs))
    assert response.status_code == 201, response.text
    return response.json()


def case_url(case: dict, action: str | None = None) -> str:
    url = f"{CASES_URL}/{case['case_id']}"
    return f"{url}/{action}" if action else url


class TestAppFactory:
    """Tests for the create_app factory function."""

    def test_create_app_returns_fastapi_instance(self, test_app):
        assert isinstance(test_app, FastAPI)
        assert test_app.title == "returnflow API"

    def test_create_app_docs_urls(self, test_app):
        assert test_app.docs_url == "/api/docs"
        assert test_app.openapi_url == "/api/openapi.json"

    def test_create_app_keeps_injected_collaborators(self, settings, tracking, publisher):
        app = create_app(settings, parcel_tracking=tracking, case_events=publisher)

        assert app.state.parcel_tracking is tracking
        assert app.state.case_events is publisher
        assert app.state.settings is settings

    @pytest.mark.asyncio
    async def test_health_endpoint(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRequestIDMiddleware:
    """Tests for request ID middleware."""

    @pytest.mark.asyncio
    async def test_generates_request_id(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert len(response.headers[REQUEST_ID_HEADER]) == 36

    @pytest.mark.asyncio
    async def test_preserves_client_request_id(self, api_client: AsyncClient):
        response = await api_client.get("/health", headers={REQUEST_ID_HEADER: "retry-7"})

        assert response.headers[REQUEST_ID_HEADER] == "retry-7"

    @pytest.mark.asyncio
    async def test_replaces_oversized_request_id(self, api_client: AsyncClient):
        response = await api_client.get("/health", headers={REQUEST_ID_HEADER: "x" * 500})

        assert response.headers[REQUEST_ID_HEADER] != "x" * 500

    def test_no_request_id_outside_requests(self):
        assert get_request_id() is None


class TestErrorResponses:
    """Tests for the error body and status mapping."""

    def test_build_error_response_body(self):
        response = build_error_response("not_found", "Case missing", 404, {"case_id": "c1"})

        assert response.status_code == 404
        assert json.loads(response.body) == {
            "error": "not_found",
            "message": "Case missing",
            "retryable": False,
            "detail": {"case_id": "c1"},
        }

    def test_retryable_response_has_retry_after(self):
        response = build_error_response("unavailable", "Try again", 503, retryable=True)

        assert response.headers["Retry-After"] == "1"

    def test_case_error_mapping(self):
        error = APIError.from_case_error(CaseStoreUnavailableError("db down"))

        assert error.status_code == 503
        assert error.retryable

    def test_conflict_mapping(self):
        error = APIError.from_case_error(IdempotencyConflictError("k1", uuid4()))

        assert error.status_code == 409
        assert error.detail["idempotency_key"] == "k1"

    def test_validation_api_error(self):
        error = ValidationAPIError("bad input")

        assert error.status_code == STATUS_BY_CODE["validation_error"]


class TestCreateCaseEndpoint:
    @pytest.mark.asyncio
    async def test_create_returns_snapshot(self, api_client: AsyncClient):
        body = await create_case(api_client, reason="size_mismatch")

        assert body["state"] == "open_return"
        assert body["reason_label"] == "Size mismatch"
        assert body["permissions"]["allow_launch_exchange"] is True
        assert body["version"] == 1

    @pytest.mark.asyncio
    async def test_retry_returns_200_with_same_case(self, api_client: AsyncClient):
        payload = create_case_payload(idempotency_key="k1")

        first = await api_client.post(CASES_URL, json=payload)
        second = await api_client.post(CASES_URL, json=payload)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["case_id"] == first.json()["case_id"]

    @pytest.mark.asyncio
    async def test_idempotency_key_header(self, api_client: AsyncClient):
        payload = {"reason": "defective"}

        first = await api_client.post(CASES_URL, json=payload, headers={"Idempotency-Key": "h1"})
        second = await api_client.post(CASES_URL, json=payload, headers={"Idempotency-Key": "h1"})

        assert first.status_code == 201
        assert second.status_code == 200

    @pytest.mark.asyncio
    async def test_header_and_body_keys_must_match(self, api_client: AsyncClient):
        response = await api_client.post(
            CASES_URL,
            json=create_case_payload(idempotency_key="k1"),
            headers={"Idempotency-Key": "k2"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_idempotency_key(self, api_client: AsyncClient):
        response = await api_client.post(CASES_URL, json={"reason": "defective"})

        assert response.status_code == 400
        assert response.json()["detail"] == {"field": "idempotency_key"}

    @pytest.mark.asyncio
    async def test_conflicting_retry(self, api_client: AsyncClient):
        await api_client.post(CASES_URL, json=create_case_payload(idempotency_key="k1"))

        response = await api_client.post(
            CASES_URL,
            json=create_case_payload(reason="defective", idempotency_key="k1"),
            headers={REQUEST_ID_HEADER: "req-42"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "idempotency_conflict"
        assert body["retryable"] is False
        assert body["request_id"] == "req-42"

    @pytest.mark.asyncio
    async def test_second_active_case_rejected(self, api_client: AsyncClient):
        await create_case(api_client)

        response = await api_client.post(CASES_URL, json=create_case_payload())

        assert response.status_code == 409
        assert response.json()["error"] == "not_eligible"

    @pytest.mark.asyncio
    async def test_unknown_parcel(self, api_client: AsyncClient):
        response = await api_client.post(
            "/api/parcels/999/return-cases", json=create_case_payload()
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, api_client: AsyncClient):
        payload = {**create_case_payload(), "state": "closed"}

        response = await api_client.post(CASES_URL, json=payload)

        assert response.status_code == 422


class TestCaseCommands:
    """Commands issued through the API."""

    @pytest.mark.asyncio
    async def test_exchange_flow(self, api_client: AsyncClient):
        case = await create_case(api_client)

        launched = await api_client.post(case_url(case, "launch-exchange"))
        assert launched.json()["state"] == "open_exchange"

        parcel = await api_client.post(case_url(case, "exchange-parcel"))
        assert parcel.status_code == 200
        assert parcel.json()["state"] == "exchange_in_progress"
        assert parcel.json()["exchange_parcel"]["id"].startswith("ex-")

        blocked = await api_client.post(case_url(case, "close"))
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "transition_not_allowed"
        assert blocked.json()["detail"]["permission"] == "allow_close"

        received = await api_client.post(case_url(case, "confirm-receipt"))
        assert received.json()["receipt_confirmed"] is True

        closed = await api_client.post(case_url(case, "close"))
        assert closed.status_code == 200
        assert closed.json()["state"] == "closed"
        assert closed.json()["closed_at"] is not None

    @pytest.mark.asyncio
    async def test_closed_case_returns_409(self, api_client: AsyncClient):
        case = await create_case(api_client)
        await api_client.post(case_url(case, "close"))

        response = await api_client.post(case_url(case, "launch-exchange"))

        assert response.status_code == 409
        assert response.json()["error"] == "closed"

    @pytest.mark.asyncio
    async def test_convert_to_return(self, api_client: AsyncClient):
        case = await create_case(api_client, is_exchange=True)

        response = await api_client.post(case_url(case, "convert-to-return"))

        assert response.status_code == 200
        assert response.json()["state"] == "open_return"

    @pytest.mark.asyncio
    async def test_update_reverse_track(self, api_client: AsyncClient):
        case = await create_case(api_client, comment="too small")

        response = await api_client.patch(
            case_url(case, "reverse-track"), json={"reverse_track_number": "rr77"}
        )

        assert response.status_code == 200
        assert response.json()["reverse_track_number"] == "RR77"
        assert response.json()["comment"] == "too small"

    @pytest.mark.asyncio
    async def test_exchange_dispatch_and_merchant_action(self, api_client: AsyncClient):
        case = await create_case(api_client, is_exchange=True)
        await api_client.post(case_url(case, "exchange-parcel"))

        dispatched = await api_client.post(
            case_url(case, "exchange-dispatch"), json={"reason": "Handed to courier"}
        )
        assert dispatched.json()["permissions"]["allow_convert_to_return"] is False
        assert dispatched.json()["cancel_unavailable_reason"] == "Handed to courier"

        requested = await api_client.post(
            case_url(case, "merchant-actions"), json={"action": "cancel_exchange"}
        )
        assert requested.status_code == 200
        assert requested.json()["pending_merchant_actions"][0]["action"] == "cancel_exchange"

    @pytest.mark.asyncio
    async def test_invalid_merchant_action(self, api_client: AsyncClient):
        case = await create_case(api_client, is_exchange=True)

        response = await api_client.post(
            case_url(case, "merchant-actions"), json={"action": "refund_twice"}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_tracking_outage_is_retryable(self, api_client: AsyncClient, tracking):
        case = await create_case(api_client, is_exchange=True)

        with patch.object(
            tracking,
            "create",
            AsyncMock(side_effect=CollaboratorUnavailableError("Parcel tracking timed out")),
        ):
            response = await api_client.post(case_url(case, "exchange-parcel"))

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_caller_surface_recorded(self, api_client: AsyncClient):
        case = await create_case(api_client)
        await api_client.post(
            case_url(case, "confirm-receipt"), headers={"X-Caller-Surface": "list-row"}
        )

        response = await api_client.get(case_url(case, "events"))

        events = response.json()["events"]
        assert [e["event_type"] for e in events] == ["evt_created", "evt_receipt_confirmed"]
        assert events[0]["actor_ref"] == "api"
        assert events[1]["actor_ref"] == "list-row"
        assert events[1]["actor_type"] == "customer"

    @pytest.mark.asyncio
    async def test_publishes_row_updates(self, api_client: AsyncClient, publisher):
        updates = []
        publisher.subscribe(updates.append)

        case = await create_case(api_client)
        await api_client.post(case_url(case, "launch-exchange"))

        assert [u.version for u in updates] == [1, 2]


class TestCaseQueries:
    @pytest.mark.asyncio
    async def test_get_case(self, api_client: AsyncClient):
        case = await create_case(api_client)

        response = await api_client.get(case_url(case))

        assert response.status_code == 200
        assert response.json()["case_id"] == case["case_id"]

    @pytest.mark.asyncio
    async def test_get_unknown_case(self, api_client: AsyncClient):
        response = await api_client.get(f"{CASES_URL}/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_events_for_unknown_case(self, api_client: AsyncClient):
        response = await api_client.get(f"{CASES_URL}/not-a-uuid/events")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_parcel_cases(self, api_client: AsyncClient):
        first = await create_case(api_client)
        await api_client.post(case_url(first, "close"))
        second = await create_case(api_client)

        response = await api_client.get(CASES_URL)

        body = response.json()
        assert body["count"] == 2
        assert {c["case_id"] for c in body["cases"]} == {first["case_id"], second["case_id"]}

    @pytest.mark.asyncio
    async def test_list_open_cases(self, api_client: AsyncClient):
        await create_case(api_client, is_exchange=True)

        all_open = await api_client.get("/api/return-cases/open")
        returns = await api_client.get("/api/return-cases/open", params={"state": "open_return"})

        assert all_open.json()["count"] == 1
        assert returns.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_list_open_cases_rejects_closed(self, api_client: AsyncClient):
        response = await api_client.get("/api/return-cases/open", params={"state": "closed"})

        assert response.status_code == 400
        assert response.json()["detail"] == {"field": "state"}


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_purge_keeps_live_records(self, api_client: AsyncClient):
        await create_case(api_client)

        response = await api_client.post("/api/admin/idempotency-records/purge")

        assert response.status_code == 200
        assert response.json()["removed"] == 0

    @pytest.mark.asyncio
    async def test_purge_removes_expired_records(self, api_client: AsyncClient):
        case = await create_case(api_client, idempotency_key="reused-key")
        await api_client.post(case_url(case, "close"))
        later = datetime.now(UTC) + timedelta(days=30)

        with patch("returnflow.api.routers.admin.utcnow", return_value=later):
            response = await api_client.post("/api/admin/idempotency-records/purge")
        again = await api_client.post(
            CASES_URL, json=create_case_payload(idempotency_key="reused-key")
        )

        assert response.json()["removed"] == 1
        assert again.status_code == 201
        assert again.json()["case_id"] != case["case_id"]
