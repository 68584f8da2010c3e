"""Parcel tracking collaborators.

The case engine only needs two things from parcel tracking: whether a
parcel may start a return, and a way to create (and later describe or
detach) an exchange parcel. This module defines those interfaces plus two
adapters:

- HttpParcelTrackingClient: talks to the tracking service over HTTP with a
  short timeout, so a slow tracking service aborts the case transaction
  with a retryable error instead of holding it open.
- InMemoryParcelTracking: process-local implementation for development
  and tests.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Protocol

import httpx

from returnflow.services.errors import (
    CollaboratorError,
    CollaboratorUnavailableError,
    ParcelNotFoundError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# Status label used for freshly created exchange parcels
PRE_REGISTERED_LABEL = "Pre-registered"
DETACHED_LABEL = "Registration cancelled"


@dataclass(frozen=True)
class ExchangeParcelRef:
    """Identity of a newly created exchange parcel."""

    id: str
    number: str | None = None


@dataclass(frozen=True)
class ExchangeParcelInfo:
    """Exchange parcel summary shown in case snapshots."""

    id: str
    number: str | None
    status_label: str | None
    dispatched: bool = False


class ParcelEligibility(Protocol):
    """Answers whether a parcel may start a return right now."""

    async def can_register_return(self, parcel_id: str) -> bool: ...


class ExchangeParcelFactory(Protocol):
    """Creates and manages exchange parcels on behalf of cases."""

    async def create(self, parcel_id: str) -> ExchangeParcelRef: ...

    async def describe(self, exchange_parcel_id: str) -> ExchangeParcelInfo | None: ...

    async def detach(self, exchange_parcel_id: str) -> None: ...


@dataclass(frozen=True)
class ParcelTrackingConfig:
    """Configuration for the HTTP tracking client."""

    base_url: str
    timeout: float = DEFAULT_TIMEOUT
    api_token: str | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> ParcelTrackingConfig:
        """Build from ``Settings.parcels``."""
        token = settings.parcels.api_token
        return cls(
            base_url=settings.parcels.base_url,
            timeout=settings.parcels.timeout,
            api_token=token.get_secret_value() if token else None,
        )


def _check_status(response: httpx.Response) -> None:
    """Raise CollaboratorError for unexpected 4xx answers."""
    if response.status_code >= 400:
        logger.warning(
            "Parcel tracking rejected %s %s with %d",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        raise CollaboratorError(
            f"Parcel tracking rejected the request with status {response.status_code}",
            {"status_code": response.status_code},
        )


class HttpParcelTrackingClient:
    """Parcel tracking adapter backed by the tracking service REST API.

    Example usage:
        config = ParcelTrackingConfig(base_url="http://tracking:8080", timeout=3.0)
        async with HttpParcelTrackingClient(config) as tracking:
            eligible = await tracking.can_register_return("12")
    """

    def __init__(
        self,
        config: ParcelTrackingConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Tracking service configuration.
            client: Optional pre-built httpx client (tests inject a mock transport).
        """
        self._config = config
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpParcelTrackingClient:
        self._get_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._config.api_token:
                headers["Authorization"] = f"Bearer {self._config.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout,
                headers=headers,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to a retryable error."""
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Parcel tracking timed out: %s %s", method, url)
            raise CollaboratorUnavailableError("Parcel tracking service timed out") from e
        except httpx.TransportError as e:
            logger.warning("Parcel tracking unreachable: %s %s (%s)", method, url, e)
            raise CollaboratorUnavailableError("Parcel tracking service is unreachable") from e

        if response.status_code >= 500:
            logger.warning(
                "Parcel tracking returned %d for %s %s", response.status_code, method, url
            )
            raise CollaboratorUnavailableError(
                f"Parcel tracking service failed with status {response.status_code}"
            )
        return response

    async def can_register_return(self, parcel_id: str) -> bool:
        """Ask tracking whether the parcel may start a return.

        Raises:
            ParcelNotFoundError: Tracking does not know the parcel.
            CollaboratorUnavailableError: Tracking did not answer in time.
        """
        response = await self._request("GET", f"/parcels/{parcel_id}/return-eligibility")
        if response.status_code == 404:
            raise ParcelNotFoundError(parcel_id)
        _check_status(response)
        return bool(response.json().get("eligible", False))

    async def create(self, parcel_id: str) -> ExchangeParcelRef:
        """Create an exchange parcel copying store and customer from the original."""
        response = await self._request("POST", f"/parcels/{parcel_id}/exchange-parcels")
        if response.status_code == 404:
            raise ParcelNotFoundError(parcel_id)
        _check_status(response)
        data = response.json()
        return ExchangeParcelRef(id=str(data["id"]), number=data.get("number"))

    async def describe(self, exchange_parcel_id: str) -> ExchangeParcelInfo | None:
        """Fetch the exchange parcel summary, or None if tracking lost it."""
        response = await self._request("GET", f"/exchange-parcels/{exchange_parcel_id}")
        if response.status_code == 404:
            return None
        _check_status(response)
        data = response.json()
        return ExchangeParcelInfo(
            id=str(data["id"]),
            number=data.get("number"),
            status_label=data.get("status_label"),
            dispatched=bool(data.get("dispatched", False)),
        )

    async def detach(self, exchange_parcel_id: str) -> None:
        """Mark the exchange parcel as no longer part of an active exchange."""
        response = await self._request("POST", f"/exchange-parcels/{exchange_parcel_id}/detach")
        if response.status_code == 404:
            logger.info("Exchange parcel %s already gone, nothing to detach", exchange_parcel_id)
            return
        _check_status(response)


class InMemoryParcelTracking:
    """Process-local parcel tracking for development and tests.

    Parcels are eligible once registered with ``add_parcel(eligible=True)``.
    """

    def __init__(self) -> None:
        self._eligible: dict[str, bool] = {}
        self._exchange_parcels: dict[str, ExchangeParcelInfo] = {}
        self._exchange_origin: dict[str, str] = {}

    def add_parcel(self, parcel_id: str | int, *, eligible: bool = True) -> None:
        self._eligible[str(parcel_id)] = eligible

    def set_eligible(self, parcel_id: str | int, eligible: bool) -> None:
        self._eligible[str(parcel_id)] = eligible

    def mark_dispatched(self, exchange_parcel_id: str, number: str) -> ExchangeParcelInfo:
        """Simulate the store shipping the exchange parcel."""
        info = replace(
            self._exchange_parcels[exchange_parcel_id],
            number=number,
            status_label="In transit",
            dispatched=True,
        )
        self._exchange_parcels[exchange_parcel_id] = info
        return info

    def exchange_parcels_for(self, parcel_id: str | int) -> list[ExchangeParcelInfo]:
        return [
            self._exchange_parcels[ex_id]
            for ex_id, origin in self._exchange_origin.items()
            if origin == str(parcel_id)
        ]

    async def can_register_return(self, parcel_id: str) -> bool:
        if parcel_id not in self._eligible:
            raise ParcelNotFoundError(parcel_id)
        return self._eligible[parcel_id]

    async def create(self, parcel_id: str) -> ExchangeParcelRef:
        exchange_id = f"ex-{uuid.uuid4().hex[:12]}"
        self._exchange_parcels[exchange_id] = ExchangeParcelInfo(
            id=exchange_id,
            number=None,
            status_label=PRE_REGISTERED_LABEL,
        )
        self._exchange_origin[exchange_id] = parcel_id
        return ExchangeParcelRef(id=exchange_id, number=None)

    async def describe(self, exchange_parcel_id: str) -> ExchangeParcelInfo | None:
        return self._exchange_parcels.get(exchange_parcel_id)

    async def detach(self, exchange_parcel_id: str) -> None:
        info = self._exchange_parcels.get(exchange_parcel_id)
        if info is not None:
            self._exchange_parcels[exchange_parcel_id] = replace(
                info, status_label=DETACHED_LABEL
            )
