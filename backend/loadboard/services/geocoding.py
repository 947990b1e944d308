"""Address geocoding through OpenStreetMap Nominatim."""
from __future__ import annotations

from typing import Any, Optional

import httpx

from loadboard.core.config import get_settings
from loadboard.core.logging import logger
from loadboard.models.lifecycle import GeoPoint, LoadLocation


class NominatimGeocoder:
    """Resolve free-text addresses to coordinates; never raises."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    def is_enabled(self) -> bool:
        return bool(self.settings.geocoding_enabled) and bool((self.settings.geocoding_base_url or "").strip())

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=float(self.settings.geocoding_timeout_seconds),
            headers={"User-Agent": self.settings.geocoding_user_agent},
            transport=self._transport,
        )

    def resolve(self, address: str) -> Optional[GeoPoint]:
        query = (address or "").strip()
        if not query:
            return None
        if not self.is_enabled():
            logger.info("Geocoding disabled, skipping lookup", address=query)
            return None

        params = {"format": "json", "q": query, "limit": 1}
        try:
            with self._client() as client:
                response = client.get(self.settings.geocoding_base_url, params=params)
            if response.status_code >= 400:
                logger.warning(
                    "Geocoding request failed",
                    address=query,
                    status_code=response.status_code,
                )
                return None
            results: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Geocoding lookup error", address=query, error=str(exc))
            return None

        if not isinstance(results, list) or not results:
            logger.warning("Geocoding returned no match", address=query)
            return None
        first = results[0] if isinstance(results[0], dict) else {}
        try:
            return GeoPoint(lat=float(first["lat"]), lon=float(first["lon"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Geocoding result missing coordinates", address=query)
            return None

    def resolve_location(self, location: LoadLocation) -> Optional[GeoPoint]:
        """Prefer coordinates stored on the location; fall back to a lookup."""
        stored = location.coordinates()
        if stored is not None:
            return stored
        return self.resolve(location.geocode_query())
