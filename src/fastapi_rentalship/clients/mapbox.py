"""Mapbox postal-code geocoder."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from fastapi_rentalship.types import Coordinates

logger = logging.getLogger(__name__)

MAPBOX_GEOCODING_URL = (
    "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
)


class MapboxGeocoder:
    """Resolves a US postal code to its centroid; ``None`` on any failure."""

    def __init__(
        self,
        token: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout

    async def geocode(self, postal_code: str) -> Coordinates | None:
        url = MAPBOX_GEOCODING_URL.format(query=quote(postal_code.strip()))
        params = {
            "types": "postcode",
            "limit": "1",
            "access_token": self._token,
        }
        try:
            response = await self._client.get(
                url, params=params, timeout=self._timeout
            )
            response.raise_for_status()
            features = response.json().get("features") or []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Geocoding %s failed: %s", postal_code, exc)
            return None

        if not features:
            logger.warning("No geocoding match for postcode %s", postal_code)
            return None
        center = features[0].get("center") or []
        if len(center) != 2:
            return None
        lng, lat = center
        return Coordinates(lat=float(lat), lng=float(lng))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
