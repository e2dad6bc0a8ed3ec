"""Google Places API (v1) client used for business discovery."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from .config import PlacesSettings, places_settings
from .errors import PlacesAPIError
from .models import GridPoint, PlaceCandidate

logger = structlog.get_logger(__name__)

PLACE_FIELDS = (
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "websiteUri",
    "nationalPhoneNumber",
    "rating",
    "userRatingCount",
    "addressComponents",
)
SEARCH_FIELD_MASK = ",".join(f"places.{name}" for name in PLACE_FIELDS)
DETAILS_FIELD_MASK = ",".join(PLACE_FIELDS)
CITY_FIELD_MASK = "places.id,places.displayName,places.location,places.types"

# Larger administrative areas get a wider default search radius.
CITY_TYPE_RADIUS_KM = (
    ("administrative_area_level_2", 20.0),
    ("administrative_area_level_3", 15.0),
    ("locality", 12.0),
)


@dataclass(frozen=True)
class CityCoordinates:
    lat: float
    lng: float
    radius_km: float


def _component(components: List[Dict[str, Any]], kind: str) -> Optional[str]:
    for component in components:
        if kind in (component.get("types") or []):
            return component.get("longText") or component.get("shortText")
    return None


def parse_place(place: Dict[str, Any]) -> Optional[PlaceCandidate]:
    """Map one Places v1 ``place`` object onto a ``PlaceCandidate``."""

    place_id = place.get("id")
    name = (place.get("displayName") or {}).get("text")
    if not place_id or not name:
        return None
    location = place.get("location") or {}
    components = place.get("addressComponents") or []
    return PlaceCandidate(
        place_id=place_id,
        name=name,
        address=place.get("formattedAddress"),
        lat=location.get("latitude"),
        lng=location.get("longitude"),
        website=place.get("websiteUri"),
        phone=place.get("nationalPhoneNumber"),
        rating=place.get("rating"),
        user_rating_count=place.get("userRatingCount"),
        city_name=_component(components, "locality"),
        postal_code=_component(components, "postal_code"),
    )


def _payload(response: httpx.Response, what: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise PlacesAPIError(f"{what} returned a malformed body: {exc}") from exc
    if not isinstance(payload, dict):
        raise PlacesAPIError(f"{what} returned {type(payload).__name__} instead of an object")
    return payload


def parse_places(places: Any) -> List[PlaceCandidate]:
    """Parse a ``places`` array, dropping entries that do not validate."""

    if not isinstance(places, list):
        return []
    parsed: List[PlaceCandidate] = []
    for place in places:
        try:
            candidate = parse_place(place) if isinstance(place, dict) else None
        except (AttributeError, ValidationError) as exc:
            logger.warning("place_dropped", place_id=place.get("id"), error=str(exc))
            continue
        if candidate is not None:
            parsed.append(candidate)
    return parsed


class PlacesClient:
    """Thin async wrapper around the Places text-search and details endpoints."""

    def __init__(self, client: httpx.AsyncClient, settings: PlacesSettings = places_settings) -> None:
        self._client = client
        self._settings = settings

    def _headers(self, field_mask: str) -> Dict[str, str]:
        if not self._settings.api_key:
            raise PlacesAPIError("GOOGLE_MAPS_API_KEY is not configured")
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self._settings.api_key,
            "X-Goog-FieldMask": field_mask,
        }

    async def _request(self, method: str, path: str, field_mask: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._settings.base_url.rstrip('/')}/{path}"
        try:
            response = await self._client.request(
                method,
                url,
                headers=self._headers(field_mask),
                timeout=self._settings.request_timeout_s,
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise PlacesAPIError(f"Places request failed: {exc}") from exc
        return response

    async def search_places(self, query: str, location: Optional[GridPoint] = None) -> List[PlaceCandidate]:
        """Text search, optionally biased to a circle around ``location``."""

        body: Dict[str, Any] = {
            "textQuery": query,
            "languageCode": self._settings.language_code,
            "regionCode": self._settings.region_code,
        }
        if location is not None:
            body["locationBias"] = {
                "circle": {
                    "center": {"latitude": location.lat, "longitude": location.lng},
                    "radius": self._settings.location_bias_radius_m,
                }
            }
        response = await self._request("POST", "places:searchText", SEARCH_FIELD_MASK, json=body)
        if response.status_code >= 400:
            raise PlacesAPIError(f"Places search returned HTTP {response.status_code}: {response.text[:200]}")
        return parse_places(_payload(response, "Places search").get("places"))

    async def get_place_details(self, place_id: str) -> Optional[PlaceCandidate]:
        response = await self._request(
            "GET",
            f"places/{place_id}",
            DETAILS_FIELD_MASK,
            params={"languageCode": self._settings.language_code},
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise PlacesAPIError(f"Place details returned HTTP {response.status_code}")
        try:
            return parse_place(_payload(response, "Place details"))
        except (AttributeError, ValidationError) as exc:
            raise PlacesAPIError(f"Place details for {place_id} did not validate: {exc}") from exc

    async def get_city_coordinates(self, city_name: str, country: str = "Greece") -> Optional[CityCoordinates]:
        """Center and an estimated radius for a city, restricted to locality-like results."""

        body = {
            "textQuery": f"{city_name} {country}".strip(),
            "languageCode": self._settings.language_code,
            "regionCode": self._settings.region_code,
        }
        response = await self._request("POST", "places:searchText", CITY_FIELD_MASK, json=body)
        if response.status_code >= 400:
            raise PlacesAPIError(f"City lookup returned HTTP {response.status_code}")
        places = _payload(response, "City lookup").get("places")
        for place in places if isinstance(places, list) else []:
            if not isinstance(place, dict):
                continue
            types = place.get("types") or []
            location = place.get("location")
            if not isinstance(location, dict) or "latitude" not in location or "longitude" not in location:
                continue
            for kind, radius in CITY_TYPE_RADIUS_KM:
                if kind in types:
                    logger.info("city_resolved", city=city_name, kind=kind, radius_km=radius)
                    return CityCoordinates(location["latitude"], location["longitude"], radius)
        return None
