"""Reverse geocoding against a Nominatim-compatible endpoint."""

from __future__ import annotations

import logging

import httpx

from pulsemap.adapters.base import ReverseGeocoder
from pulsemap.domain.errors import NetworkFailure

logger = logging.getLogger(__name__)

_STREET_KEYS = ("road", "pedestrian", "footway", "street", "neighbourhood", "suburb")


class NominatimGeocoder(ReverseGeocoder):
    """Looks up the nearest street name for a coordinate."""

    def __init__(
        self,
        url: str = "https://nominatim.openstreetmap.org/reverse",
        user_agent: str = "pulsemap/0.1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=timeout,
            transport=transport,
        )

    async def lookup(self, lat: float, lng: float) -> str:
        try:
            response = await self._client.get(
                self._url,
                params={"format": "jsonv2", "lat": lat, "lon": lng, "zoom": 17},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkFailure("reverse_geocode", str(exc)) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise NetworkFailure("reverse_geocode", f"undecodable response body: {exc}") from exc
        address = (body.get("address") if isinstance(body, dict) else None) or {}
        for key in _STREET_KEYS:
            if address.get(key):
                return address[key]
        raise LookupError(f"no street at {lat:.5f},{lng:.5f}")

    async def close(self) -> None:
        await self._client.aclose()
