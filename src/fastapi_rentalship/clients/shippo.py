"""Shippo carrier client (shipments + label transactions)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from fastapi_rentalship.exceptions import CarrierCommunicationError

logger = logging.getLogger(__name__)


class ShippoClient:
    """Thin async wrapper over the Shippo REST API.

    Transport and HTTP-level failures surface as
    ``CarrierCommunicationError``; the response bodies are returned as-is
    for the orchestrator to interpret.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = "https://api.goshippo.com",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"ShippoToken {api_token}",
            "Content-Type": "application/json",
        }

    async def _post(
        self, path: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.post(
                url, json=payload, headers=self._headers
            )
        except httpx.TimeoutException as exc:
            raise CarrierCommunicationError(
                f"Shippo request to {path} timed out"
            ) from exc
        except httpx.RequestError as exc:
            raise CarrierCommunicationError(
                f"Shippo request to {path} failed: {exc}"
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "Shippo %s returned HTTP %d: %s",
                path,
                response.status_code,
                response.text[:500],
            )
            raise CarrierCommunicationError(
                f"Shippo {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise CarrierCommunicationError(
                f"Shippo {path} returned a non-JSON body",
                status_code=response.status_code,
            ) from exc

    async def create_shipment(
        self,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcel: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._post(
            "/shipments/",
            {
                "address_from": address_from,
                "address_to": address_to,
                "parcels": [parcel],
                "async": False,
            },
        )

    async def purchase_label(
        self, rate_id: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        payload = {"rate": rate_id, "async": False, **options}
        return await self._post("/transactions/", payload)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
