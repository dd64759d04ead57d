"""
Resolve a submitted location into coordinates.

Explicit coordinates are trusted as given. Free-text addresses are anchored
to New York City, geocoded with Nominatim and checked against a rough
bounding box of the five boroughs.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GEOCODER_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "photo-map/1.0"

# Rough NYC bounding box, a sanity gate rather than a borough polygon
MIN_LAT, MAX_LAT = 40.4774, 40.9176
MIN_LNG, MAX_LNG = -74.2591, -73.7004

CITY_SUFFIX = ", New York City, NY"


class LocationError(Exception):
    """The submitted location could not be resolved."""


class GeocodingTimeout(LocationError):
    """The geocoder did not answer within the configured timeout."""


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: str


def parse_coordinate(raw: Optional[str]) -> Optional[float]:
    """Return ``raw`` as a finite float, or None."""
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def normalize_address(address: str) -> str:
    """Append the city unless the address already names New York."""
    trimmed = (address or "").strip()
    if not trimmed:
        return ""
    lowered = trimmed.lower()
    if "ny" in lowered or "new york" in lowered:
        return trimmed
    return f"{trimmed}{CITY_SUFFIX}"


def is_within_service_area(lat: float, lng: float) -> bool:
    return MIN_LAT <= lat <= MAX_LAT and MIN_LNG <= lng <= MAX_LNG


class NominatimGeocoder:
    """Forward geocoding against a Nominatim-compatible search endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str = DEFAULT_GEOCODER_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 10.0,
    ):
        self.client = client
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout

    async def search(self, query: str) -> List[Dict[str, Any]]:
        """
        Return the raw result list for ``query`` (at most one entry).

        Raises GeocodingTimeout on timeout and LocationError for any other
        transport failure or non-success response.
        """
        params = {"format": "json", "limit": "1", "q": query}
        try:
            response = await self.client.get(
                self.url,
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Geocoder timed out for %r: %s", query, e)
            raise GeocodingTimeout("geocoding timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Geocoder request failed for %r: %s", query, e)
            raise LocationError("geocoding failed") from e

        if not response.is_success:
            logger.warning("Geocoder returned %s for %r", response.status_code, query)
            raise LocationError("geocoding failed")

        try:
            data = response.json()
        except ValueError as e:
            raise LocationError("geocoding failed") from e

        if not isinstance(data, list):
            return []
        return data


class LocationResolver:
    """Turns submitted form fields into a validated Location."""

    def __init__(self, geocoder: NominatimGeocoder):
        self.geocoder = geocoder

    async def resolve(self, fields: Mapping[str, str]) -> Location:
        address = (fields.get("address") or "").strip()
        lat = parse_coordinate(fields.get("lat"))
        lng = parse_coordinate(fields.get("lng"))

        if lat is not None and lng is not None:
            return Location(lat=lat, lng=lng, address=address)

        if not address:
            raise LocationError("missing address")

        return await self.geocode(address)

    async def geocode(self, address: str) -> Location:
        normalized = normalize_address(address)
        results = await self.geocoder.search(normalized)
        if not results:
            raise LocationError("no results")

        first = results[0] if isinstance(results[0], dict) else {}
        lat = parse_coordinate(str(first.get("lat", "")))
        lng = parse_coordinate(str(first.get("lon", "")))
        if lat is None or lng is None:
            raise LocationError("invalid result")

        if not is_within_service_area(lat, lng):
            logger.info("Rejected geocode for %r at (%s, %s)", normalized, lat, lng)
            raise LocationError("outside service area")

        return Location(lat=lat, lng=lng, address=normalized)
