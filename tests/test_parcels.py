"""Tests for the parcel tracking adapters.

The HTTP client is exercised against httpx.MockTransport so no tracking
service is needed.
"""

import json

import httpx
import pytest

from returnflow.core.config import Settings
from returnflow.services.errors import (
    CollaboratorError,
    CollaboratorUnavailableError,
    ParcelNotFoundError,
)
from returnflow.services.parcels import (
    DETACHED_LABEL,
    PRE_REGISTERED_LABEL,
    HttpParcelTrackingClient,
    InMemoryParcelTracking,
    ParcelTrackingConfig,
)

BASE_URL = "http://tracking.test"


def _make_client(handler) -> HttpParcelTrackingClient:
    """Build a tracking client whose requests are answered by ``handler``."""
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(base_url=BASE_URL, transport=transport)
    return HttpParcelTrackingClient(ParcelTrackingConfig(base_url=BASE_URL), client=client)


# =============================================================================
# Configuration
# =============================================================================


class TestParcelTrackingConfig:
    def test_from_settings(self):
        settings = Settings(
            parcels={"base_url": "https://tracking.example", "timeout": 2.5, "api_token": "t0k"}
        )

        config = ParcelTrackingConfig.from_settings(settings)

        assert config.base_url == "https://tracking.example"
        assert config.timeout == 2.5
        assert config.api_token == "t0k"

    def test_from_settings_without_token(self):
        config = ParcelTrackingConfig.from_settings(Settings())

        assert config.api_token is None


# =============================================================================
# HTTP client
# =============================================================================


class TestEligibility:
    @pytest.mark.asyncio
    async def test_eligible(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/parcels/12/return-eligibility"
            return httpx.Response(200, json={"eligible": True})

        tracking = _make_client(handler)

        assert await tracking.can_register_return("12") is True

    @pytest.mark.asyncio
    async def test_not_eligible(self):
        tracking = _make_client(lambda request: httpx.Response(200, json={"eligible": False}))

        assert await tracking.can_register_return("12") is False

    @pytest.mark.asyncio
    async def test_unknown_parcel(self):
        tracking = _make_client(lambda request: httpx.Response(404))

        with pytest.raises(ParcelNotFoundError):
            await tracking.can_register_return("12")

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        tracking = _make_client(lambda request: httpx.Response(503))

        with pytest.raises(CollaboratorUnavailableError) as exc_info:
            await tracking.can_register_return("12")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        tracking = _make_client(handler)

        with pytest.raises(CollaboratorUnavailableError):
            await tracking.can_register_return("12")

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        tracking = _make_client(handler)

        with pytest.raises(CollaboratorUnavailableError):
            await tracking.can_register_return("12")

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        tracking = _make_client(lambda request: httpx.Response(422, json={"detail": "bad"}))

        with pytest.raises(CollaboratorError) as exc_info:
            await tracking.can_register_return("12")
        assert not exc_info.value.retryable
        assert exc_info.value.detail == {"status_code": 422}


class TestExchangeParcels:
    @pytest.mark.asyncio
    async def test_create(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/parcels/12/exchange-parcels"
            return httpx.Response(201, json={"id": 501, "number": "EX501"})

        ref = await _make_client(handler).create("12")

        assert ref.id == "501"
        assert ref.number == "EX501"

    @pytest.mark.asyncio
    async def test_describe(self):
        body = {"id": "501", "number": "EX501", "status_label": "In transit", "dispatched": True}
        tracking = _make_client(lambda request: httpx.Response(200, content=json.dumps(body)))

        info = await tracking.describe("501")

        assert info.status_label == "In transit"
        assert info.dispatched

    @pytest.mark.asyncio
    async def test_describe_missing_parcel(self):
        tracking = _make_client(lambda request: httpx.Response(404))

        assert await tracking.describe("501") is None

    @pytest.mark.asyncio
    async def test_detach_tolerates_missing_parcel(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(404)

        await _make_client(handler).detach("501")

        assert seen == [("POST", "/exchange-parcels/501/detach")]

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        client = httpx.AsyncClient(base_url=BASE_URL, transport=transport)

        async with HttpParcelTrackingClient(ParcelTrackingConfig(base_url=BASE_URL), client):
            pass

        assert not client.is_closed
        await client.aclose()


# =============================================================================
# In-memory adapter
# =============================================================================


class TestInMemoryParcelTracking:
    @pytest.mark.asyncio
    async def test_unregistered_parcel(self):
        with pytest.raises(ParcelNotFoundError):
            await InMemoryParcelTracking().can_register_return("12")

    @pytest.mark.asyncio
    async def test_exchange_parcel_lifecycle(self):
        tracking = InMemoryParcelTracking()
        tracking.add_parcel(12)

        ref = await tracking.create("12")
        created = await tracking.describe(ref.id)
        shipped = tracking.mark_dispatched(ref.id, "EX1")
        await tracking.detach(ref.id)

        assert created.status_label == PRE_REGISTERED_LABEL
        assert shipped.dispatched
        assert (await tracking.describe(ref.id)).status_label == DETACHED_LABEL
        assert [p.id for p in tracking.exchange_parcels_for(12)] == [ref.id]
